"""Client used by a brand node to call its governing node."""

from typing import Any, Optional

import httpx

from meridian_core.config import Settings
from meridian_core.providers.base import NodeClient, NodeResponse


class GoverningSiteClient(NodeClient):
    """Brand -> governing calls."""

    async def send_users(self, users: list[dict[str, Any]]) -> NodeResponse:
        """Deliver one batch of user records for deduplication."""
        return await self._request("POST", "deduplicated-users", json={"users": users})


def make_governing_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[GoverningSiteClient]:
    """Client for this brand node's governing site, or None if unconfigured."""
    if not settings.governing_site_url or not settings.api_key:
        return None
    return GoverningSiteClient(
        base_url=settings.governing_site_url,
        api_key=settings.api_key,
        own_site_url=settings.site_url,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
