"""Site registry schemas for request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field


class SiteCreate(BaseModel):
    """Request body for registering a brand site."""

    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=512)
    api_key: str = Field(..., min_length=1, max_length=255)


class SiteResponse(BaseModel):
    """A registered brand site. The api key is never returned."""

    id: str
    name: str
    url: str
    created_at: datetime

    @classmethod
    def from_model(cls, site) -> "SiteResponse":
        return cls(id=site.id, name=site.name, url=site.url, created_at=site.created_at)


class SiteListResponse(BaseModel):
    """Response body for listing registered sites."""

    sites: list[SiteResponse]
    total: int


class HealthCheckResponse(BaseModel):
    """Peer health check answer."""

    success: bool
    message: str
    site_type: str
