"""API dependencies for dependency injection."""

import hmac
from typing import Annotated, Optional

from celery import Celery
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from meridian_core.config import Settings, get_settings
from meridian_core.domain.models import SiteRegistration
from meridian_core.domain.services.job_queue import CeleryJobQueue, JobQueue
from meridian_core.domain.services.request_cache import MergedListCache
from meridian_core.domain.services.sites import SiteRegistryService
from meridian_core.infra.db import get_sync_session_factory
from meridian_core.providers import (
    BrandClientFactory,
    GoverningSiteClient,
    make_brand_client_factory,
    make_governing_client,
)


def get_db() -> Session:
    """Get a database session."""
    session_factory = get_sync_session_factory()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings(request: Request) -> Settings:
    """Settings attached to the running app, falling back to the environment."""
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


AppSettings = Annotated[Settings, Depends(get_app_settings)]
DBSession = Annotated[Session, Depends(get_db)]


def get_celery_app(settings: AppSettings) -> Celery:
    """Get a Celery app instance for sending tasks."""
    return Celery(broker=settings.celery_broker_url, backend=settings.celery_result_backend)


def get_job_queue(celery_app: Annotated[Celery, Depends(get_celery_app)]) -> JobQueue:
    return CeleryJobQueue(celery_app)


def get_brand_client_factory(settings: AppSettings) -> BrandClientFactory:
    return make_brand_client_factory(settings)


def get_governing_client(settings: AppSettings) -> Optional[GoverningSiteClient]:
    """Client for this brand node's governing site, or None if unconfigured."""
    return make_governing_client(settings)


def get_request_cache(settings: AppSettings) -> Optional[MergedListCache]:
    """The merged profile request cache, or None when disabled."""
    if settings.aggregator_cache_ttl_seconds <= 0:
        return None
    return MergedListCache.from_url(settings.redis_url, settings.aggregator_cache_ttl_seconds)


# -----------------------------------------------------------------------------
# Site type gates
# -----------------------------------------------------------------------------


def require_governing(settings: AppSettings) -> Settings:
    if not settings.is_governing:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint is only available on the governing site",
        )
    return settings


def require_brand(settings: AppSettings) -> Settings:
    if not settings.is_brand:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint is only available on brand sites",
        )
    return settings


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------


def _presented_token(
    x_access_token: Optional[str],
    authorization: Optional[str],
) -> Optional[str]:
    if x_access_token:
        return x_access_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def _unauthorized(detail: str = "Invalid or missing access token") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_calling_site(
    request: Request,
    settings: Annotated[Settings, Depends(require_governing)],
    db: DBSession,
    x_access_token: Annotated[Optional[str], Header()] = None,
    authorization: Annotated[Optional[str], Header()] = None,
) -> SiteRegistration:
    """Authenticate a brand site calling the governing site.

    Raises:
        HTTPException: 401 if no registration matches the token.
    """
    token = _presented_token(x_access_token, authorization)
    site = SiteRegistryService(db).authenticate(
        token,
        origin=request.headers.get("origin"),
        user_agent=request.headers.get("user-agent"),
    )
    if site is None:
        raise _unauthorized()
    return site


def verify_governing_caller(
    settings: Annotated[Settings, Depends(require_brand)],
    x_access_token: Annotated[Optional[str], Header()] = None,
    authorization: Annotated[Optional[str], Header()] = None,
) -> Settings:
    """Authenticate the governing site calling a brand site.

    Raises:
        HTTPException: 401 if the token does not equal this site's api key.
    """
    token = _presented_token(x_access_token, authorization)
    if not token or not settings.api_key:
        raise _unauthorized()
    if not hmac.compare_digest(token.encode(), settings.api_key.encode()):
        raise _unauthorized()
    return settings


def verify_node_token(
    request: Request,
    settings: AppSettings,
    db: DBSession,
    x_access_token: Annotated[Optional[str], Header()] = None,
    authorization: Annotated[Optional[str], Header()] = None,
) -> Settings:
    """Authenticate a peer node on either site type."""
    if settings.is_governing:
        get_calling_site(request, settings, db, x_access_token, authorization)
        return settings
    return verify_governing_caller(settings, x_access_token, authorization)


def verify_admin(
    settings: AppSettings,
    x_admin_token: Annotated[Optional[str], Header()] = None,
) -> Settings:
    """Authenticate the local operator.

    Raises:
        HTTPException: 401 if the admin token is missing or wrong.
    """
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), settings.admin_token.encode()
    ):
        raise _unauthorized("Invalid or missing admin token")
    return settings


# Type aliases for cleaner route signatures
CallingSite = Annotated[SiteRegistration, Depends(get_calling_site)]
GoverningCaller = Annotated[Settings, Depends(verify_governing_caller)]
NodeCaller = Annotated[Settings, Depends(verify_node_token)]
AdminSettings = Annotated[Settings, Depends(verify_admin)]
GoverningSettings = Annotated[Settings, Depends(require_governing)]
BrandSettings = Annotated[Settings, Depends(require_brand)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
BrandClientFactoryDep = Annotated[BrandClientFactory, Depends(get_brand_client_factory)]
RequestCacheDep = Annotated[Optional[MergedListCache], Depends(get_request_cache)]
GoverningClientDep = Annotated[Optional[GoverningSiteClient], Depends(get_governing_client)]
