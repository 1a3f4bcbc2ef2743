"""Meridian Core API - Main Application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from meridian_core.api.middleware.request_logging import RequestLoggingMiddleware
from meridian_core.api.routes import deduplicated_users as deduplicated_users_routes
from meridian_core.api.routes import governance as governance_routes
from meridian_core.api.routes import health as health_routes
from meridian_core.api.routes import profile_requests as profile_requests_routes
from meridian_core.api.routes import sites as sites_routes
from meridian_core.api.routes import users as users_routes
from meridian_core.config import get_settings
from meridian_core.observability import configure_logging, get_logger
from meridian_core.providers import CLIENT_VERSION

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = getattr(app.state, "settings", None) or get_settings()
    app.state.settings = settings
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        service_name="meridian-core",
        site_type=settings.site_type,
    )
    logger.info("Meridian node starting", site_type=settings.site_type, site_url=settings.site_url)
    yield
    # Shutdown


app = FastAPI(
    title="Meridian Core API",
    description="Cross-site identity sync and change request governance",
    version=CLIENT_VERSION,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

# Include API routers
app.include_router(health_routes.router)
app.include_router(deduplicated_users_routes.router)
app.include_router(governance_routes.router)
app.include_router(sites_routes.router)
app.include_router(profile_requests_routes.router)
app.include_router(users_routes.router)


@app.get("/healthz")
async def healthz() -> dict:
    """Liveness check."""
    return {"ok": True, "service": "meridian-core"}


@app.get("/")
async def root() -> dict:
    """Root endpoint."""
    return {
        "name": "Meridian Core API",
        "version": CLIENT_VERSION,
        "status": "running",
    }
