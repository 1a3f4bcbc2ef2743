"""Client used by the governing node to call a brand node."""

from typing import Any, Callable, Optional

import httpx

from meridian_core.config import Settings
from meridian_core.providers.base import NodeClient, RemoteNodeError


class BrandSiteClient(NodeClient):
    """Governing -> brand calls."""

    async def list_profile_requests(
        self,
        status: Optional[str] = None,
        search_query: Optional[str] = None,
        cursor: int = 0,
    ) -> dict[str, Any]:
        """Fetch one page of the brand node's change requests.

        Returns:
            The decoded page with ``profile_requests`` and ``pagination``.

        Raises:
            RemoteNodeError: If the call fails or ``profile_requests`` is
                missing or not a list.
        """
        response = await self._request(
            "GET",
            "brand-profile-requests",
            params={"status": status or None, "search_query": search_query or None, "cursor": cursor},
        )
        page = response.data
        if not isinstance(page.get("profile_requests"), list):
            raise RemoteNodeError(
                "Malformed profile request page: missing profile_requests list",
                status_code=response.status_code,
                site_url=self.base_url,
            )
        if not isinstance(page.get("pagination"), dict):
            page["pagination"] = {}
        return page

    async def approve_profile_request(
        self,
        request_id: int,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "profile-requests/approve",
            json={"request_id": request_id, "user_id": user_id, "user_email": user_email},
        )
        return response.data

    async def reject_profile_request(
        self,
        request_id: int,
        user_email: str,
        rejection_comment: str,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "profile-requests/reject",
            json={
                "request_id": request_id,
                "user_email": user_email,
                "rejection_comment": rejection_comment,
            },
        )
        return response.data

    async def update_user_roles(self, email: str, roles: list[str]) -> dict[str, Any]:
        response = await self._request(
            "POST", "users/roles", json={"email": email, "roles": roles}
        )
        return response.data

    async def create_user(
        self,
        username: str,
        email: str,
        full_name: str,
        role: str,
    ) -> dict[str, Any]:
        """Create an account on the brand node.

        Returns:
            The decoded reply; ``data.user_id`` is the new local id.
        """
        response = await self._request(
            "POST",
            "users/new",
            json={"username": username, "email": email, "full_name": full_name, "role": role},
        )
        return response.data

    async def delete_user(self, email: str) -> dict[str, Any]:
        response = await self._request("POST", "users/delete", json={"email": email})
        return response.data

    async def resync_users(self) -> dict[str, Any]:
        """Ask the brand node to re-send its whole user base."""
        response = await self._request("POST", "resync-users")
        return response.data


BrandClientFactory = Callable[[Any], BrandSiteClient]


def make_brand_client_factory(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BrandClientFactory:
    """Build clients for registered brand sites.

    The returned callable takes anything with ``url`` and ``api_key``
    attributes (normally a ``SiteRegistration``).
    """

    def factory(site: Any) -> BrandSiteClient:
        return BrandSiteClient(
            base_url=site.url,
            api_key=site.api_key,
            own_site_url=settings.site_url,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    return factory
