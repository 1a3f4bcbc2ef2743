"""Deduplicated identity schemas for request/response validation."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class IngestRequest(BaseModel):
    """Batch of user records pushed by a brand site."""

    users: Any = None


class IngestResponse(BaseModel):
    """Answer to an inbound batch."""

    success: bool
    action_id: Optional[str] = None
    users_processed: int


class MembershipResponse(BaseModel):
    site_name: str
    site_url: str
    user_id: int
    roles: list[str]


class IdentityResponse(BaseModel):
    """A deduplicated identity."""

    id: int
    email: str
    first_name: str
    last_name: str
    sites: list[MembershipResponse]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class IdentityListResponse(BaseModel):
    """Page of deduplicated identities."""

    users: list[IdentityResponse]
    total_users: int
    total_pages: int
    current_page: int
    per_page: int
    has_more: bool


class RoleAssignment(BaseModel):
    site_name: str = Field(..., min_length=1)
    roles: list[str]


class UpdateRolesRequest(BaseModel):
    """Change one identity's roles on several sites."""

    email: str = Field(..., min_length=3)
    sites: list[RoleAssignment] = Field(..., min_length=1)


class RemoveFromSitesRequest(BaseModel):
    """Delete one identity's accounts on several sites."""

    email: str = Field(..., min_length=3)
    site_names: list[str] = Field(..., min_length=1)


class FanOutResponse(BaseModel):
    """Result of an operation executed on several brand sites."""

    success: bool
    message: str
    sites_succeeded: list[str]
    error_log: list[dict[str, Any]]


class PruneResponse(BaseModel):
    """Result of pruning memberships of disconnected sites."""

    examined: int
    updated: int
    deleted: int
    memberships_removed: int


class SiteRoleAssignment(BaseModel):
    site_name: str = Field(..., min_length=1)
    role: str = "subscriber"


class AddToSitesRequest(BaseModel):
    """Create one person's account on several sites."""

    email: str = Field(..., min_length=3)
    username: str = Field(..., min_length=1, max_length=64)
    full_name: str = Field(..., min_length=1, max_length=255)
    sites: list[SiteRoleAssignment] = Field(..., min_length=1)
