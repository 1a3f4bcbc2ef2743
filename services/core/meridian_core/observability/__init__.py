"""Observability package for structured logging."""

from meridian_core.observability.logging import (
    JsonFormatter,
    RequestContext,
    StructuredLogger,
    bind_request_context,
    configure_logging,
    current_request_context,
    get_logger,
    reset_request_context,
)

__all__ = [
    "JsonFormatter",
    "RequestContext",
    "StructuredLogger",
    "bind_request_context",
    "configure_logging",
    "current_request_context",
    "get_logger",
    "reset_request_context",
]
