"""Unit tests for structured logging and request logging."""

import json
import logging
import sys
from io import StringIO

import pytest
from httpx import ASGITransport, AsyncClient

from meridian_core.api.middleware.request_logging import peer_site_from_agent
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


def make_record(msg: str = "Test message", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JSON log formatter."""

    def test_format_basic_log_record(self):
        parsed = json.loads(JsonFormatter().format(make_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["service"] == "meridian"
        assert "timestamp" in parsed
        assert "origin" not in parsed

    def test_site_type_is_stamped(self):
        formatter = JsonFormatter(service_name="meridian-core", site_type="governing")

        parsed = json.loads(formatter.format(make_record()))

        assert parsed["service"] == "meridian-core"
        assert parsed["site_type"] == "governing"

    def test_extra_fields(self):
        parsed = json.loads(JsonFormatter().format(make_record(site_url="https://alpha.example/", attempt=3)))

        assert parsed["site_url"] == "https://alpha.example/"
        assert parsed["attempt"] == 3

    def test_unserializable_extra_is_stringified(self):
        parsed = json.loads(JsonFormatter().format(make_record(payload={1, 2})))

        assert isinstance(parsed["payload"], str)

    def test_warning_carries_origin(self):
        parsed = json.loads(JsonFormatter().format(make_record(level=logging.WARNING)))

        assert parsed["origin"] == "test:42"

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        parsed = json.loads(JsonFormatter().format(record))

        assert parsed["exception_type"] == "RuntimeError"
        assert "RuntimeError: boom" in parsed["exception"]


class TestRequestContext:
    def test_to_dict_skips_empty_fields(self):
        context = RequestContext(request_id="abc", method="GET", extra={"user_id": 7})

        assert context.to_dict() == {"request_id": "abc", "method": "GET", "user_id": 7}

    def test_remote_site(self):
        context = RequestContext(remote_site="https://hub.example/")

        assert context.to_dict() == {"remote_site": "https://hub.example/"}


class TestStructuredLogger:
    """Tests for the keyword-field logger."""

    @pytest.fixture
    def captured(self):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        inner = logging.getLogger("meridian.test.structured")
        inner.addHandler(handler)
        inner.setLevel(logging.DEBUG)
        inner.propagate = False
        yield stream
        inner.removeHandler(handler)

    def lines(self, stream: StringIO) -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    def test_keyword_fields(self, captured):
        StructuredLogger("meridian.test.structured").info("Synced", user_id=7)

        assert self.lines(captured)[0]["user_id"] == 7

    def test_context_fields(self, captured):
        logger = StructuredLogger("meridian.test.structured")

        logger.warning("Slow peer", context=RequestContext(remote_site="https://alpha.example/"))

        line = self.lines(captured)[0]
        assert line["level"] == "WARNING"
        assert line["remote_site"] == "https://alpha.example/"

    def test_exception_includes_traceback(self, captured):
        logger = StructuredLogger("meridian.test.structured")
        try:
            raise ValueError("bad")
        except ValueError:
            logger.exception("Failed")

        assert "ValueError: bad" in self.lines(captured)[0]["exception"]

    def test_bound_context_is_attached(self, captured):
        logger = StructuredLogger("meridian.test.structured")
        token = bind_request_context(RequestContext(request_id="req-9", remote_site="https://hub.example/"))
        try:
            logger.info("Inside request", user_id=3)
        finally:
            reset_request_context(token)
        logger.info("Outside request")

        inside, outside = self.lines(captured)
        assert inside["request_id"] == "req-9"
        assert inside["remote_site"] == "https://hub.example/"
        assert inside["user_id"] == 3
        assert "request_id" not in outside
        assert current_request_context() is None

    def test_explicit_context_wins(self, captured):
        logger = StructuredLogger("meridian.test.structured")
        token = bind_request_context(RequestContext(request_id="bound"))
        try:
            logger.info("Explicit", context=RequestContext(request_id="explicit"))
        finally:
            reset_request_context(token)

        assert self.lines(captured)[0]["request_id"] == "explicit"

    def test_disabled_level_is_skipped(self, captured):
        logging.getLogger("meridian.test.structured").setLevel(logging.INFO)

        StructuredLogger("meridian.test.structured").debug("Hidden")

        assert captured.getvalue() == ""


class TestGetLogger:
    def test_same_name_returns_same_instance(self):
        assert get_logger("meridian.a") is get_logger("meridian.a")
        assert get_logger("meridian.a") is not get_logger("meridian.b")


class TestConfigureLogging:
    """Tests for root logger configuration."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_sets_level(self):
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_is_rejected(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(level="LOUD")

    def test_json_format(self):
        configure_logging(json_format=True, site_type="brand")

        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, JsonFormatter)
        assert formatter.site_type == "brand"

    def test_plain_format(self):
        configure_logging(json_format=False)

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_http_client_loggers_are_quieted(self):
        configure_logging(level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING


class TestRequestLogging:
    """Tests for the request logging middleware."""

    def test_peer_site_from_agent(self):
        assert peer_site_from_agent("Meridian/0.1.0 (+https://hub.example/)") == "https://hub.example/"
        assert peer_site_from_agent("curl/8.0") is None
        assert peer_site_from_agent(None) is None

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, governing_app):
        async with AsyncClient(transport=ASGITransport(app=governing_app), base_url="http://test") as client:
            response = await client.get("/healthz", headers={"X-Request-ID": "req-1"})

        assert response.headers["X-Request-ID"] == "req-1"

    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, governing_app):
        async with AsyncClient(transport=ASGITransport(app=governing_app), base_url="http://test") as client:
            response = await client.get("/")

        assert len(response.headers["X-Request-ID"]) == 32
