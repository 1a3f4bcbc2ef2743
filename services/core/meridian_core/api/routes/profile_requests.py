"""Brand-side change request routes, called by the governing node."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from meridian_core.api.deps import DBSession, GoverningCaller, JobQueueDep
from meridian_core.api.schemas.profile_requests import (
    ApproveRequest,
    BrandPagination,
    BrandProfileRequestPage,
    DecisionResponse,
    ProfileRequestResponse,
    RejectRequest,
)
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.brand_users import BrandUserService, user_snapshot
from meridian_core.domain.services.profile_requests import (
    ProfileRequestService,
    RequestNotPendingError,
    UserNotFoundError,
)
from meridian_core.domain.services.user_sync import UserSyncService
from meridian_core.observability import get_logger

router = APIRouter(tags=["profile-requests"])

logger = get_logger(__name__)


@router.get("/brand-profile-requests", response_model=BrandProfileRequestPage)
async def list_brand_profile_requests(
    settings: GoverningCaller,
    db: DBSession,
    status_filter: Optional[str] = Query(None, alias="status"),
    search_query: Optional[str] = Query(None),
    cursor: int = Query(0, ge=0),
):
    """One page of this site's change requests, newest first."""
    service = ProfileRequestService(db)
    items, total, window = service.list_requests(
        status=status_filter, search_query=search_query, cursor=cursor
    )
    return BrandProfileRequestPage(
        profile_requests=[ProfileRequestResponse.from_model(item) for item in items],
        pagination=BrandPagination(**window.metadata(total, len(items))),
    )


@router.post("/profile-requests/approve", response_model=DecisionResponse)
async def approve_profile_request(
    request: ApproveRequest,
    settings: GoverningCaller,
    db: DBSession,
    queue: JobQueueDep,
):
    """Apply a pending change request to the live user."""
    users = BrandUserService(db)
    before = None
    if request.user_id:
        before = users.get_user(request.user_id)
    if before is None and request.user_email:
        before = users.get_by_email(request.user_email)
    snapshot = user_snapshot(before) if before is not None else None

    try:
        profile_request, user = ProfileRequestService(db).approve(
            request_id=request.request_id,
            user_id=request.user_id,
            user_email=request.user_email,
        )
    except (UserNotFoundError, RequestNotPendingError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    AuditService(db).create_entry(
        actor="remote_site",
        action_type="profile_request.approve",
        result="ok",
        site_url=settings.governing_site_url,
        entity_type="profile_request",
        entity_id=profile_request.id,
        request_json=request.model_dump(),
    )

    if snapshot is not None:
        UserSyncService(db, settings, queue).on_user_changed(user, snapshot)

    return DecisionResponse(success=True, message="Profile request approved.")


@router.post("/profile-requests/reject", response_model=DecisionResponse)
async def reject_profile_request(
    request: RejectRequest,
    settings: GoverningCaller,
    db: DBSession,
):
    """Reject a pending change request with a comment."""
    try:
        profile_request = ProfileRequestService(db).reject(
            request_id=request.request_id,
            user_email=request.user_email,
            comment=request.rejection_comment,
        )
    except (UserNotFoundError, RequestNotPendingError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    AuditService(db).create_entry(
        actor="remote_site",
        action_type="profile_request.reject",
        result="ok",
        site_url=settings.governing_site_url,
        entity_type="profile_request",
        entity_id=profile_request.id,
        request_json=request.model_dump(),
    )
    return DecisionResponse(success=True, message="Profile request rejected.")
