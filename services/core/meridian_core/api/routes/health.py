"""Peer health check route."""

from fastapi import APIRouter

from meridian_core.api.deps import NodeCaller
from meridian_core.api.schemas.sites import HealthCheckResponse

router = APIRouter(tags=["health"])


@router.get("/health-check", response_model=HealthCheckResponse)
async def health_check(settings: NodeCaller):
    """Confirm that the caller's credentials are accepted by this node."""
    return HealthCheckResponse(
        success=True,
        message=f"{settings.site_name or 'Meridian node'} is reachable",
        site_type=settings.site_type,
    )
