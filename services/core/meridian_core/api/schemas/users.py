"""Brand user schemas for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class BrandUserCreate(BaseModel):
    """Request body for creating a local user."""

    login: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    display_name: Optional[str] = Field(None, max_length=255)
    url: str = Field("", max_length=512)
    roles: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)


class BrandUserUpdate(BaseModel):
    """Request body for editing a profile.

    Governed fields are turned into a change request; ``roles`` and
    attributes outside the governed set are written directly.
    """

    display_name: Optional[str] = None
    email: Optional[str] = None
    url: Optional[str] = None
    user_nicename: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    roles: Optional[list[str]] = None
    requested_by_self: bool = True

    def data_fields(self) -> dict[str, Any]:
        fields = ("display_name", "email", "url", "user_nicename")
        return {name: getattr(self, name) for name in fields if getattr(self, name) is not None}


class BrandUserResponse(BaseModel):
    """A local user with its sync marker."""

    id: int
    login: str
    email: str
    nicename: str
    display_name: str
    url: str
    roles: list[str]
    meta: dict[str, Any]
    sync_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user, sync_status: Optional[str] = None) -> "BrandUserResponse":
        return cls(
            id=user.id,
            login=user.login,
            email=user.email,
            nicename=user.nicename,
            display_name=user.display_name,
            url=user.url,
            roles=list(user.roles_json or []),
            meta=dict(user.meta_json or {}),
            sync_status=sync_status,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ProfileUpdateResponse(BaseModel):
    """Result of a profile edit."""

    user: BrandUserResponse
    profile_request_id: Optional[int] = None
    profile_request_created: bool = False
    sync_scheduled: bool = False


class UserRolesRequest(BaseModel):
    """Role change RPC body (governing -> brand)."""

    email: str = Field(..., min_length=3)
    roles: list[str]


class UserDeleteRequest(BaseModel):
    """Deletion RPC body (governing -> brand)."""

    email: str = Field(..., min_length=3)


class ActionResponse(BaseModel):
    success: bool
    message: str


class SyncScheduleResponse(BaseModel):
    """Result of a forced resync."""

    scheduled: bool
    job_id: Optional[int] = None
    sync_status: str


class BackfillResponse(BaseModel):
    """Result of a full user backfill."""

    success: bool
    total_users_sent: int
    total_batches_sent: int
    batch_size: int
    errors: list[dict[str, Any]]
    responses: list[dict[str, Any]]


class ProvisionUserRequest(BaseModel):
    """Account creation RPC body (governing -> brand)."""

    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    full_name: str = Field(..., min_length=1, max_length=255)
    role: str = "subscriber"


class ProvisionedUser(BaseModel):
    user_id: int
    username: str
    email: str
    full_name: str
    role: str


class ProvisionUserResponse(BaseModel):
    success: bool
    message: str
    data: ProvisionedUser
