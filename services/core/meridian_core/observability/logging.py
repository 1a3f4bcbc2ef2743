"""Structured logging for Meridian services.

Log records are emitted as JSON lines so that cross-node traffic (sync
deliveries, aggregator fan-outs, decision proxies) can be correlated by
site and user across brand and governing nodes.

While a request is being served, its ``RequestContext`` is bound to the
current task, and every line logged through a ``StructuredLogger`` carries
the request id and peer site without the caller passing them along.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_SERVICE_NAME = "meridian"
PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "celery.redirected")

# Attributes every LogRecord has; anything else was passed as a field
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON documents.

    Records at WARNING and above also name the module and line they were
    emitted from.
    """

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME, site_type: Optional[str] = None):
        super().__init__()
        self.service_name = service_name
        self.site_type = site_type

    def _envelope(self, record: logging.LogRecord) -> dict[str, Any]:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
        }
        if self.site_type:
            entry["site_type"] = self.site_type
        if record.levelno >= logging.WARNING:
            entry["origin"] = f"{record.module}:{record.lineno}"
        return entry

    def format(self, record: logging.LogRecord) -> str:
        entry = self._envelope(record)

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_"):
                entry[key] = _jsonable(value)

        if record.exc_info:
            exc_type = record.exc_info[0]
            entry["exception_type"] = exc_type.__name__ if exc_type else None
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry)


@dataclass
class RequestContext:
    """Fields attached to every log line emitted while serving one request.

    ``remote_site`` identifies the peer node when the request was made by
    another node.
    """

    request_id: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    remote_site: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        fields = {
            "request_id": self.request_id,
            "path": self.path,
            "method": self.method,
            "remote_site": self.remote_site,
        }
        result = {key: value for key, value in fields.items() if value}
        result.update(self.extra)
        return result


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "meridian_request_context", default=None
)


def bind_request_context(context: RequestContext) -> Token:
    """Make ``context`` the ambient context of the current task."""
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def current_request_context() -> Optional[RequestContext]:
    return _request_context.get()


class StructuredLogger:
    """Logger accepting keyword fields in addition to the message.

    An explicit ``context`` wins over the bound request context. Keyword
    fields win over both.

    Example:
        logger = get_logger(__name__)
        logger.warning("Brand site unreachable", site_url=url, attempt=3)
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        msg: str,
        context: Optional[RequestContext] = None,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        context = context or current_request_context()
        fields = context.to_dict() if context else {}
        fields.update(kwargs)
        self._logger.log(level, msg, exc_info=exc_info, extra=fields, stacklevel=3)

    def debug(self, msg: str, context: Optional[RequestContext] = None, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, context, **kwargs)

    def info(self, msg: str, context: Optional[RequestContext] = None, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, context, **kwargs)

    def warning(self, msg: str, context: Optional[RequestContext] = None, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, context, **kwargs)

    def error(
        self,
        msg: str,
        context: Optional[RequestContext] = None,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        self._log(logging.ERROR, msg, context, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, context: Optional[RequestContext] = None, **kwargs: Any) -> None:
        """Log an error with the active exception's traceback."""
        self._log(logging.ERROR, msg, context, exc_info=True, **kwargs)


@lru_cache(maxsize=None)
def get_logger(name: str) -> StructuredLogger:
    """Get the structured logger for ``name`` (typically ``__name__``)."""
    return StructuredLogger(name)


def configure_logging(
    level: str = DEFAULT_LOG_LEVEL,
    json_format: bool = True,
    service_name: str = DEFAULT_SERVICE_NAME,
    site_type: Optional[str] = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: JSON lines when true, plain text otherwise.
        service_name: Service name stamped on JSON records.
        site_type: Node role stamped on JSON records.

    Raises:
        ValueError: If ``level`` is not a known level name.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter(service_name=service_name, site_type=site_type))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
