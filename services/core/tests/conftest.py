"""Pytest configuration and fixtures for Meridian Core tests.

This module provides fixtures for:
- Database: SQLite in-memory engine and sessions
- Settings: one governing node and one brand node
- Remote nodes: an httpx MockTransport routing calls per host
- HTTP client: AsyncClient for FastAPI testing on either node type
"""

from collections.abc import AsyncGenerator, Iterator
from typing import Callable

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import BigInteger, StaticPool, create_engine, event
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker

from meridian_core.config import Settings
from meridian_core.domain.models import Base
from meridian_core.domain.services.job_queue import InMemoryJobQueue
from tests.factories import ADMIN_TOKEN, BRAND_API_KEY, BRAND_URL, GOVERNING_URL


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def governing_settings() -> Settings:
    """Settings of a governing node."""
    return Settings(
        site_type="governing",
        site_name="Hub",
        site_url=GOVERNING_URL,
        admin_token=ADMIN_TOKEN,
        database_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        aggregator_budget_seconds=5,
        aggregator_cache_ttl_seconds=0,
        log_json=False,
    )


@pytest.fixture
def brand_settings() -> Settings:
    """Settings of a brand node reporting to ``GOVERNING_URL``."""
    return Settings(
        site_type="brand",
        site_name="Alpha",
        site_url=BRAND_URL,
        api_key=BRAND_API_KEY,
        governing_site_url=GOVERNING_URL,
        admin_token=ADMIN_TOKEN,
        database_url="sqlite+pysqlite:///:memory:",
        sync_max_retries=5,
        sync_backoff_base_seconds=60,
        sync_backoff_max_seconds=3600,
        sync_batch_size=10,
        log_json=False,
    )


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


# SQLite autoincrements only INTEGER PRIMARY KEY columns
@compiles(BigInteger, "sqlite")
def _bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


def transactional(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Yield a session; commit if the consumer finishes, roll back if it raises."""
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


@pytest.fixture
def sync_engine():
    """One in-memory SQLite database shared by every connection of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(
        engine, "connect", lambda dbapi_conn, _record: dbapi_conn.execute("PRAGMA foreign_keys=ON")
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=sync_engine, autoflush=False)


@pytest.fixture
def db_session(sync_session_factory) -> Iterator[Session]:
    yield from transactional(sync_session_factory)


# -----------------------------------------------------------------------------
# Remote Nodes
# -----------------------------------------------------------------------------


class FakeSiteNetwork:
    """Routes outbound node calls to one handler per host.

    Handlers take an ``httpx.Request`` and return an ``httpx.Response``.
    Calls to an unknown host answer 404. Every request is recorded.
    """

    def __init__(self):
        self.handlers: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, site_url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handlers[httpx.URL(site_url).host] = handler

    def requests_to(self, site_url: str, path: str = "") -> list[httpx.Request]:
        host = httpx.URL(site_url).host
        return [
            r for r in self.requests if r.url.host == host and r.url.path.endswith(path)
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            return httpx.Response(404, json={"message": "unknown host"})
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def site_network() -> FakeSiteNetwork:
    """Fake remote nodes reachable through ``site_network.transport``."""
    return FakeSiteNetwork()


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    """In-memory job queue used in place of Celery."""
    return InMemoryJobQueue()


# -----------------------------------------------------------------------------
# FastAPI Test Client Fixtures
# -----------------------------------------------------------------------------


def _configure_app(
    settings: Settings,
    sync_session_factory,
    job_queue: InMemoryJobQueue,
    site_network: FakeSiteNetwork,
) -> FastAPI:
    from meridian_core.api.deps import (
        get_app_settings,
        get_brand_client_factory,
        get_db,
        get_governing_client,
        get_job_queue,
        get_request_cache,
    )
    from meridian_core.main import app
    from meridian_core.providers import make_brand_client_factory, make_governing_client

    def override_get_db():
        yield from transactional(sync_session_factory)

    app.state.settings = settings
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_brand_client_factory] = lambda: make_brand_client_factory(
        settings, transport=site_network.transport
    )
    app.dependency_overrides[get_governing_client] = lambda: make_governing_client(
        settings, transport=site_network.transport
    )
    app.dependency_overrides[get_request_cache] = lambda: None
    return app


@pytest.fixture
def governing_app(governing_settings, sync_session_factory, job_queue, site_network) -> FastAPI:
    """The API configured as a governing node."""
    app = _configure_app(governing_settings, sync_session_factory, job_queue, site_network)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def brand_app(brand_settings, sync_session_factory, job_queue, site_network) -> FastAPI:
    """The API configured as a brand node."""
    app = _configure_app(brand_settings, sync_session_factory, job_queue, site_network)
    yield app
    app.dependency_overrides.clear()


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# db_session is requested so the schema exists before the first request
@pytest.fixture
async def governing_client(governing_app, db_session) -> AsyncGenerator[AsyncClient, None]:
    async with _client(governing_app) as client:
        yield client


@pytest.fixture
async def brand_client(brand_app, db_session) -> AsyncGenerator[AsyncClient, None]:
    async with _client(brand_app) as client:
        yield client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def governing_headers() -> dict[str, str]:
    """Headers the governing node sends to the brand node under test."""
    return {"X-Access-Token": BRAND_API_KEY, "User-Agent": f"Meridian/0.1.0 (+{GOVERNING_URL})"}
