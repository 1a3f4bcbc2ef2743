"""Profile request schemas for request/response validation."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ProfileRequestResponse(BaseModel):
    """A change request as exposed by a brand site."""

    id: int
    user_id: int
    status: str
    comment: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    requested_by: str = ""
    user_email: str = ""
    user_name: str = ""
    user_login: str = ""
    requested_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_model(cls, request) -> "ProfileRequestResponse":
        """Create response from ProfileRequest model."""
        from meridian_core.domain.services.profile_requests import serialize_request

        return cls(**serialize_request(request))


class BrandPagination(BaseModel):
    """Offset pagination block of a brand site's page."""

    total_count: int
    current_count: int
    offset: int
    limit: int
    has_more: bool
    next_cursor: Optional[int] = None


class BrandProfileRequestPage(BaseModel):
    """One page of a brand site's change requests."""

    success: bool = True
    profile_requests: list[ProfileRequestResponse]
    pagination: BrandPagination


class ApproveRequest(BaseModel):
    """Approval RPC body (governing -> brand)."""

    request_id: Optional[int] = None
    user_id: Optional[int] = None
    user_email: Optional[str] = None


class RejectRequest(BaseModel):
    """Rejection RPC body (governing -> brand)."""

    request_id: Optional[int] = None
    user_email: Optional[str] = None
    rejection_comment: Optional[str] = None


class DecisionResponse(BaseModel):
    """Result of a decision."""

    success: bool
    message: str


class GoverningApproveRequest(BaseModel):
    """Approval issued from the governing site's admin."""

    site_name: str = Field(..., min_length=1)
    request_id: int
    user_id: Optional[int] = None
    user_email: Optional[str] = None


class GoverningRejectRequest(BaseModel):
    """Rejection issued from the governing site's admin."""

    site_name: str = Field(..., min_length=1)
    request_id: int
    user_email: str = Field(..., min_length=1)
    rejection_comment: str = Field(..., min_length=1)


class AggregatedPagination(BrandPagination):
    """Pagination block computed over the merged multi-site list."""

    total_pages: int
    current_page: int


class SiteOption(BaseModel):
    """Filter option for the site selector."""

    label: str
    value: str


class AggregatedProfileRequestPage(BaseModel):
    """Globally ordered page of change requests from every brand site."""

    success: bool
    profile_requests: list[dict[str, Any]]
    pagination: AggregatedPagination
    total_pending_count: int
    site_result_counts: dict[str, int]
    site_wise_total_counts: dict[str, int]
    sites: list[SiteOption]
    sites_queried: list[str]
    errors: list[str]
