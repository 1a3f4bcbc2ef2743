"""Brand-side user routes.

Local administration (create, edit, resync) requires the admin token. The
provisioning, role and delete routes are called by the governing node.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from meridian_core.api.deps import (
    AdminSettings,
    DBSession,
    GoverningCaller,
    GoverningClientDep,
    JobQueueDep,
    require_brand,
)
from meridian_core.api.schemas.users import (
    ActionResponse,
    BackfillResponse,
    BrandUserCreate,
    BrandUserResponse,
    BrandUserUpdate,
    ProfileUpdateResponse,
    ProvisionedUser,
    ProvisionUserRequest,
    ProvisionUserResponse,
    SyncScheduleResponse,
    UserDeleteRequest,
    UserRolesRequest,
)
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.brand_users import BrandUserService, user_snapshot
from meridian_core.domain.services.job_queue import JOB_SYNC_BACKFILL
from meridian_core.domain.services.profile_requests import ProfileRequestService
from meridian_core.domain.services.user_sync import ACTION_UPDATE, UserSyncService
from meridian_core.observability import get_logger

router = APIRouter(tags=["users"], dependencies=[Depends(require_brand)])

logger = get_logger(__name__)


def _user_or_404(users: BrandUserService, user_id: int):
    user = users.get_user(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found",
        )
    return user


@router.post("/users", response_model=BrandUserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    request: BrandUserCreate,
    settings: AdminSettings,
    db: DBSession,
    queue: JobQueueDep,
):
    """Create a local user and schedule its first sync."""
    try:
        user = BrandUserService(db).create_user(
            login=request.login,
            email=request.email,
            display_name=request.display_name,
            url=request.url,
            roles=request.roles,
            meta=request.meta,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    sync = UserSyncService(db, settings, queue)
    sync.on_user_created(user)
    return BrandUserResponse.from_model(user, sync.get_state(user.id).status)


@router.patch("/users/{user_id}", response_model=ProfileUpdateResponse)
async def update_user(
    user_id: int,
    request: BrandUserUpdate,
    settings: AdminSettings,
    db: DBSession,
    queue: JobQueueDep,
):
    """Edit a profile.

    Changes to governed fields become a change request and leave the live
    values untouched. Other attributes and roles are written directly.
    """
    users = BrandUserService(db)
    user = _user_or_404(users, user_id)
    before = user_snapshot(user)

    try:
        result = ProfileRequestService(db).intercept_update(
            user,
            data=request.data_fields(),
            meta=request.meta,
            requested_by_self=request.requested_by_self,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result.passthrough_meta:
        meta = dict(user.meta_json or {})
        meta.update(result.passthrough_meta)
        user.meta_json = meta
    if request.roles is not None:
        users.set_roles(user, request.roles)
    db.flush()

    sync = UserSyncService(db, settings, queue)
    job = sync.on_user_changed(user, before)

    return ProfileUpdateResponse(
        user=BrandUserResponse.from_model(user, sync.get_state(user.id).status),
        profile_request_id=result.request.id if result.request is not None else None,
        profile_request_created=result.created,
        sync_scheduled=job is not None,
    )


@router.post(
    "/users/new",
    response_model=ProvisionUserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def provision_user(
    request: ProvisionUserRequest,
    settings: GoverningCaller,
    db: DBSession,
    queue: JobQueueDep,
):
    """Create an account on behalf of the governing node.

    The new user is scheduled for sync like any locally created one, so the
    identity store hears about it through the regular delivery path as well.
    """
    first_name, _, last_name = request.full_name.strip().partition(" ")
    try:
        user = BrandUserService(db).create_user(
            login=request.username,
            email=request.email,
            display_name=request.full_name.strip(),
            roles=[request.role],
            meta={"first_name": first_name, "last_name": last_name.strip()},
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    UserSyncService(db, settings, queue).on_user_created(user)
    AuditService(db).create_entry(
        actor="remote_site",
        action_type="user.provision",
        result="ok",
        site_url=settings.governing_site_url,
        entity_type="brand_user",
        entity_id=user.id,
        request_json=request.model_dump(),
    )
    logger.info("User provisioned by governing site", user_id=user.id)
    return ProvisionUserResponse(
        success=True,
        message="User created.",
        data=ProvisionedUser(
            user_id=user.id,
            username=user.login,
            email=user.email,
            full_name=user.display_name,
            role=user.roles_json[0],
        ),
    )


@router.post("/users/roles", response_model=ActionResponse)
async def set_user_roles(
    request: UserRolesRequest,
    settings: GoverningCaller,
    db: DBSession,
):
    """Replace a user's roles on this site."""
    users = BrandUserService(db)
    user = users.get_by_email(request.email)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    users.set_roles(user, request.roles)
    AuditService(db).create_entry(
        actor="remote_site",
        action_type="user.roles",
        result="ok",
        site_url=settings.governing_site_url,
        entity_type="brand_user",
        entity_id=user.id,
        request_json=request.model_dump(),
    )
    return ActionResponse(success=True, message="User roles updated.")


@router.post("/users/delete", response_model=ActionResponse)
async def delete_user(
    request: UserDeleteRequest,
    settings: GoverningCaller,
    db: DBSession,
):
    """Delete a user's account on this site."""
    users = BrandUserService(db)
    user = users.get_by_email(request.email)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    user_id = user.id
    users.delete_user(user)
    AuditService(db).create_entry(
        actor="remote_site",
        action_type="user.delete",
        result="ok",
        site_url=settings.governing_site_url,
        entity_type="brand_user",
        entity_id=user_id,
        request_json=request.model_dump(),
    )
    return ActionResponse(success=True, message="User deleted.")


@router.post("/resync-users", response_model=ActionResponse)
async def resync_users(settings: GoverningCaller, queue: JobQueueDep):
    """Schedule a full backfill on behalf of the governing node."""
    action_id = queue.enqueue(JOB_SYNC_BACKFILL, {})
    logger.info("Backfill requested by governing site", action_id=action_id)
    return ActionResponse(success=True, message="User resync scheduled.")


@router.post("/sync/backfill", response_model=BackfillResponse)
async def backfill_users(
    settings: AdminSettings,
    db: DBSession,
    queue: JobQueueDep,
    client: GoverningClientDep,
):
    """Send every local user to the governing site now.

    Responds 207 when some batches failed.
    """
    report = await UserSyncService(db, settings, queue, client=client).send_all_users_for_deduplication()
    if not report.success:
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=report.to_dict())
    return report.to_dict()


@router.post("/sync/users/{user_id}", response_model=SyncScheduleResponse)
async def resync_user(
    user_id: int,
    settings: AdminSettings,
    db: DBSession,
    queue: JobQueueDep,
):
    """Force a new delivery of one user, also after a terminal failure."""
    users = BrandUserService(db)
    _user_or_404(users, user_id)

    sync = UserSyncService(db, settings, queue)
    job = sync.schedule(user_id, ACTION_UPDATE, force=True)
    return SyncScheduleResponse(
        scheduled=job is not None,
        job_id=job.id if job is not None else None,
        sync_status=sync.get_state(user_id).status,
    )
