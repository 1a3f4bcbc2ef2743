"""Governing-node change request routes.

The aggregated list merges every brand site's requests into one globally
ordered page. Decisions are proxied to the brand site that owns the
request.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from meridian_core.api.deps import (
    AdminSettings,
    BrandClientFactoryDep,
    DBSession,
    RequestCacheDep,
    require_governing,
)
from meridian_core.api.schemas.profile_requests import (
    AggregatedProfileRequestPage,
    DecisionResponse,
    GoverningApproveRequest,
    GoverningRejectRequest,
)
from meridian_core.domain.services.aggregator import ProfileRequestAggregator, ProfileRequestQuery
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.governance import GovernanceService, SiteNotFoundError
from meridian_core.domain.services.sites import SiteRegistryService
from meridian_core.observability import get_logger
from meridian_core.providers import RemoteNodeError

router = APIRouter(tags=["governance"], dependencies=[Depends(require_governing)])

logger = get_logger(__name__)


@router.get("/profile-requests", response_model=AggregatedProfileRequestPage)
async def list_profile_requests(
    settings: AdminSettings,
    db: DBSession,
    client_factory: BrandClientFactoryDep,
    cache: RequestCacheDep,
    site: Optional[str] = Query(None, description="Restrict to one site name"),
    status_filter: Optional[str] = Query(None, alias="status"),
    search_query: Optional[str] = Query(None),
    cursor: int = Query(0, ge=0),
):
    """Globally ordered page of change requests from all brand sites."""
    aggregator = ProfileRequestAggregator(
        SiteRegistryService(db).list_sites(),
        client_factory,
        page_size=settings.aggregator_page_size,
        budget_seconds=settings.aggregator_budget_seconds,
        cache=cache,
    )
    return await aggregator.fetch(
        ProfileRequestQuery(
            status=status_filter,
            search_query=search_query,
            site=site,
            offset=cursor,
        )
    )


def _audit_decision(
    db,
    action_type: str,
    request_json: dict,
    result: str,
    site_url: Optional[str] = None,
    error_detail: Optional[str] = None,
) -> None:
    AuditService(db).create_entry(
        actor="admin",
        action_type=action_type,
        result=result,
        site_url=site_url,
        entity_type="profile_request",
        entity_id=request_json.get("request_id"),
        request_json=request_json,
        error_detail=error_detail,
    )
    # Error entries must outlive the rollback of the failed request
    db.commit()


@router.post("/admin/profile-requests/approve", response_model=DecisionResponse)
async def approve_profile_request(
    request: GoverningApproveRequest,
    settings: AdminSettings,
    db: DBSession,
    client_factory: BrandClientFactoryDep,
    cache: RequestCacheDep,
):
    """Approve a request on the brand site that owns it."""
    governance = GovernanceService(db, client_factory, cache)
    try:
        data = await governance.approve_request(
            site_name=request.site_name,
            request_id=request.request_id,
            user_id=request.user_id,
            user_email=request.user_email,
        )
    except SiteNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RemoteNodeError as e:
        logger.error("Remote approval failed", site_url=e.site_url, error=str(e))
        _audit_decision(
            db,
            "profile_request.approve",
            request.model_dump(),
            "error",
            site_url=e.site_url,
            error_detail=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to approve profile request.",
        )

    _audit_decision(db, "profile_request.approve", request.model_dump(), "ok")
    return DecisionResponse(
        success=True, message=data.get("message") or "Profile request approved."
    )


@router.post("/admin/profile-requests/reject", response_model=DecisionResponse)
async def reject_profile_request(
    request: GoverningRejectRequest,
    settings: AdminSettings,
    db: DBSession,
    client_factory: BrandClientFactoryDep,
    cache: RequestCacheDep,
):
    """Reject a request on the brand site that owns it."""
    governance = GovernanceService(db, client_factory, cache)
    try:
        data = await governance.reject_request(
            site_name=request.site_name,
            request_id=request.request_id,
            user_email=request.user_email,
            comment=request.rejection_comment,
        )
    except SiteNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteNodeError as e:
        logger.error("Remote rejection failed", site_url=e.site_url, error=str(e))
        _audit_decision(
            db,
            "profile_request.reject",
            request.model_dump(),
            "error",
            site_url=e.site_url,
            error_detail=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reject profile request.",
        )

    _audit_decision(db, "profile_request.reject", request.model_dump(), "ok")
    return DecisionResponse(
        success=True, message=data.get("message") or "Profile request rejected."
    )
