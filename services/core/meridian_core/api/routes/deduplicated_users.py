"""Identity store routes on the governing node.

``POST /deduplicated-users`` is called by brand nodes. The remaining routes
are the operator's identity administration and require the admin token.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from meridian_core.api.deps import (
    AdminSettings,
    BrandClientFactoryDep,
    CallingSite,
    DBSession,
    JobQueueDep,
    RequestCacheDep,
    require_governing,
)
from meridian_core.api.schemas.identities import (
    AddToSitesRequest,
    FanOutResponse,
    IdentityListResponse,
    IngestRequest,
    IngestResponse,
    RemoveFromSitesRequest,
    UpdateRolesRequest,
)
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.dedup_receiver import DeduplicationReceiver
from meridian_core.domain.services.governance import GovernanceService
from meridian_core.domain.services.identity_store import IdentityFilter

router = APIRouter(
    prefix="/deduplicated-users",
    tags=["deduplicated-users"],
    dependencies=[Depends(require_governing)],
)


def get_governance_service(
    db: DBSession,
    client_factory: BrandClientFactoryDep,
    cache: RequestCacheDep,
) -> GovernanceService:
    return GovernanceService(db, client_factory, cache)


GovernanceServiceDep = Annotated[GovernanceService, Depends(get_governance_service)]


@router.post("", response_model=IngestResponse)
async def receive_users(
    request: IngestRequest,
    site: CallingSite,
    db: DBSession,
    queue: JobQueueDep,
):
    """Accept a batch of user records from a brand node."""
    receiver = DeduplicationReceiver(db, queue)
    try:
        result = receiver.ingest(request.users, source=site)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return IngestResponse(**result.to_dict())


@router.get("", response_model=IdentityListResponse)
async def list_deduplicated_users(
    settings: AdminSettings,
    governance: GovernanceServiceDep,
    search: Optional[str] = Query(None, description="Email or name substring"),
    role: Optional[str] = Query(None, description="Role held on any site"),
    site: Optional[str] = Query(None, description="Site name or URL"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """Search the deduplicated identities."""
    filters = IdentityFilter(search_text=search, role=role, site=site)
    return governance.list_identities(filters, page=page, per_page=per_page)


@router.post("/roles", response_model=FanOutResponse)
async def update_roles(
    request: UpdateRolesRequest,
    settings: AdminSettings,
    governance: GovernanceServiceDep,
    db: DBSession,
):
    """Change one identity's roles on the selected brand sites."""
    report = await governance.update_roles(
        request.email, [assignment.model_dump() for assignment in request.sites]
    )

    AuditService(db).create_entry(
        actor="admin",
        action_type="identity.update_roles",
        result="ok" if report.success else "error",
        entity_type="deduplicated_user",
        entity_id=request.email,
        request_json=request.model_dump(),
        response_json={"sites_succeeded": report.succeeded},
        error_detail=None if report.success else str(report.error_log),
    )
    return report.to_dict()


@router.post("/remove", response_model=FanOutResponse)
async def remove_from_sites(
    request: RemoveFromSitesRequest,
    settings: AdminSettings,
    governance: GovernanceServiceDep,
    db: DBSession,
):
    """Delete one identity's accounts on the selected brand sites."""
    report = await governance.remove_from_sites(request.email, request.site_names)

    AuditService(db).create_entry(
        actor="admin",
        action_type="identity.remove",
        result="ok" if report.success else "error",
        entity_type="deduplicated_user",
        entity_id=request.email,
        request_json=request.model_dump(),
        response_json={"sites_succeeded": report.succeeded},
        error_detail=None if report.success else str(report.error_log),
    )
    return report.to_dict()


@router.post("/add-to-sites", response_model=FanOutResponse)
async def add_to_sites(
    request: AddToSitesRequest,
    settings: AdminSettings,
    governance: GovernanceServiceDep,
    db: DBSession,
):
    """Create one identity's accounts on the selected brand sites."""
    report = await governance.add_to_sites(
        request.email,
        request.username,
        request.full_name,
        [assignment.model_dump() for assignment in request.sites],
    )

    AuditService(db).create_entry(
        actor="admin",
        action_type="identity.add_to_sites",
        result="ok" if report.success else "error",
        entity_type="deduplicated_user",
        entity_id=request.email,
        request_json=request.model_dump(),
        response_json={"sites_succeeded": report.succeeded},
        error_detail=None if report.success else str(report.error_log),
    )
    return report.to_dict()
