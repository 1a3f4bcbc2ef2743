"""Request logging middleware.

Every request gets an id (taken from ``X-Request-ID`` when the caller sent
one) that is echoed back. The request context is bound for the duration of
the request, so every line logged while serving it carries the id and, for
calls made by peer nodes, the peer's URL as ``remote_site``.
"""

import re
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from meridian_core.observability import (
    RequestContext,
    bind_request_context,
    get_logger,
    reset_request_context,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
PEER_AGENT_PATTERN = re.compile(r"^Meridian/\S+ \(\+(?P<url>[^)]+)\)")

# Health checks are not worth a log line
QUIET_PATHS = {"/healthz"}


def peer_site_from_agent(user_agent: Optional[str]) -> Optional[str]:
    """Site URL advertised by a peer node's User-Agent, if any."""
    match = PEER_AGENT_PATTERN.match(user_agent or "")
    return match.group("url") if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds the request context and logs one line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = bind_request_context(
            RequestContext(
                request_id=request_id,
                path=request.url.path,
                method=request.method,
                remote_site=peer_site_from_agent(request.headers.get("user-agent")),
            )
        )
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("Request failed")
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if request.url.path not in QUIET_PATHS:
                logger.info(
                    "Request completed",
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 1),
                )
            return response
        finally:
            reset_request_context(token)
