"""Site registry and maintenance routes on the governing node."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from meridian_core.api.deps import (
    AdminSettings,
    BrandClientFactoryDep,
    DBSession,
    RequestCacheDep,
    require_governing,
)
from meridian_core.api.schemas.identities import FanOutResponse, PruneResponse
from meridian_core.api.schemas.sites import SiteCreate, SiteListResponse, SiteResponse
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.governance import GovernanceService
from meridian_core.domain.services.identity_store import IdentityStore
from meridian_core.domain.services.sites import SiteRegistryService

router = APIRouter(
    prefix="/admin/sites",
    tags=["sites"],
    dependencies=[Depends(require_governing)],
)


def get_site_registry(db: DBSession, client_factory: BrandClientFactoryDep) -> SiteRegistryService:
    """Get the site registry service."""
    return SiteRegistryService(db, client_factory)


SiteRegistryDep = Annotated[SiteRegistryService, Depends(get_site_registry)]


@router.get("", response_model=SiteListResponse)
async def list_sites(settings: AdminSettings, registry: SiteRegistryDep):
    """List registered brand sites."""
    sites = registry.list_sites()
    return SiteListResponse(sites=[SiteResponse.from_model(s) for s in sites], total=len(sites))


@router.post("", response_model=SiteResponse, status_code=status.HTTP_201_CREATED)
async def register_site(
    request: SiteCreate,
    settings: AdminSettings,
    registry: SiteRegistryDep,
    db: DBSession,
):
    """Register a brand site after a successful health check."""
    try:
        site = await registry.register(request.name, request.url, request.api_key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    AuditService(db).create_entry(
        actor="admin",
        action_type="site.register",
        result="ok",
        site_url=site.url,
        entity_type="site_registration",
        entity_id=site.id,
        request_json={"name": request.name, "url": request.url},
    )
    return SiteResponse.from_model(site)


@router.delete("/{site_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_site(
    site_id: str,
    settings: AdminSettings,
    registry: SiteRegistryDep,
    db: DBSession,
):
    """Remove a registration and the memberships it contributed."""
    site = registry.get_site(site_id)
    if site is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Site {site_id} not found",
        )
    site_url = site.url
    registry.delete(site_id)

    AuditService(db).create_entry(
        actor="admin",
        action_type="site.delete",
        result="ok",
        site_url=site_url,
        entity_type="site_registration",
        entity_id=site_id,
    )


@router.post("/prune", response_model=PruneResponse)
async def prune_disconnected_sites(
    settings: AdminSettings,
    registry: SiteRegistryDep,
    db: DBSession,
):
    """Drop identity memberships of sites that are no longer registered."""
    connected = [site.url for site in registry.list_sites()]
    stats = IdentityStore(db).prune_disconnected_sites(
        connected, batch_size=settings.cleanup_batch_size
    )
    AuditService(db).create_entry(
        actor="admin",
        action_type="identity.prune",
        result="ok",
        response_json=stats,
    )
    return stats


@router.post("/rebuild-index", response_model=FanOutResponse)
async def rebuild_index(
    settings: AdminSettings,
    db: DBSession,
    client_factory: BrandClientFactoryDep,
    cache: RequestCacheDep,
):
    """Ask every brand site to re-send all of its users."""
    report = await GovernanceService(db, client_factory, cache).rebuild_index()
    AuditService(db).create_entry(
        actor="admin",
        action_type="identity.rebuild_index",
        result="ok" if report.success else "error",
        response_json={"sites_succeeded": report.succeeded},
        error_detail=None if report.success else str(report.error_log),
    )
    return report.to_dict()
