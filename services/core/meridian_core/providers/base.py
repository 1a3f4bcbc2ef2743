"""Shared plumbing for node-to-node HTTP clients.

Every outbound call carries the shared secret in ``X-Access-Token`` (and as
a bearer credential) plus a User-Agent naming the calling site's URL, which
the receiving node uses to identify the caller when proxies strip
``Origin``.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from meridian_core.domain.site_urls import join_endpoint, normalize_site_url

CLIENT_VERSION = "0.1.0"
ACCESS_TOKEN_HEADER = "X-Access-Token"
DEFAULT_TIMEOUT_SECONDS = 30.0


class RemoteNodeError(Exception):
    """Raised when a remote node is unreachable or answers unusably.

    Covers transport errors, timeouts, non-2xx statuses and malformed
    bodies.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        site_url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.site_url = site_url


@dataclass
class NodeResponse:
    """A decoded 2xx answer from a remote node."""

    status_code: int
    data: dict[str, Any]


def build_user_agent(own_site_url: Optional[str]) -> str:
    agent = f"Meridian/{CLIENT_VERSION}"
    if own_site_url:
        agent += f" (+{normalize_site_url(own_site_url)})"
    return agent


class NodeClient:
    """Base class for clients addressing one remote node.

    Args:
        base_url: The remote node's site URL.
        api_key: Shared secret sent with every request.
        own_site_url: This node's URL, advertised in the User-Agent.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        own_site_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = normalize_site_url(base_url)
        self.api_key = api_key
        self.own_site_url = own_site_url
        self.timeout = timeout
        self.transport = transport

    def _get_headers(self) -> dict[str, str]:
        headers = {
            ACCESS_TOKEN_HEADER: self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": build_user_agent(self.own_site_url),
            "Accept": "application/json",
        }
        if self.own_site_url:
            headers["Origin"] = normalize_site_url(self.own_site_url).rstrip("/")
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> NodeResponse:
        """Perform one request and decode its JSON object body.

        Raises:
            RemoteNodeError: On transport failure, timeout, non-2xx status or
                a body that is not a JSON object.
        """
        url = join_endpoint(self.base_url, path)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    params={k: v for k, v in (params or {}).items() if v is not None},
                    json=json,
                )
        except httpx.TimeoutException as e:
            raise RemoteNodeError(f"Timed out calling {url}: {e}", site_url=self.base_url) from e
        except httpx.HTTPError as e:
            raise RemoteNodeError(f"Failed to reach {url}: {e}", site_url=self.base_url) from e

        if not response.is_success:
            raise RemoteNodeError(
                f"{url} answered HTTP {response.status_code}",
                status_code=response.status_code,
                site_url=self.base_url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteNodeError(
                f"{url} returned a non-JSON body",
                status_code=response.status_code,
                site_url=self.base_url,
            ) from e

        if not isinstance(data, dict):
            raise RemoteNodeError(
                f"{url} returned an unexpected body",
                status_code=response.status_code,
                site_url=self.base_url,
            )

        return NodeResponse(status_code=response.status_code, data=data)

    async def health_check(self) -> bool:
        """Check that the node answers and accepts our credentials."""
        response = await self._request("GET", "health-check")
        return bool(response.data.get("success"))
