"""Maintenance tasks for the governing node."""

from datetime import datetime, timezone

from meridian_worker.celery_app import app


def _now_utc() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


@app.task(name="maintenance.prune_disconnected_sites", bind=True, max_retries=3)
def prune_disconnected_sites(self) -> dict:
    """Drop identity memberships of brand sites that are no longer registered.

    Identities left without any membership are deleted.

    Returns:
        Dict with status, prune counts and timestamps.
    """
    started_at = _now_utc()

    try:
        from meridian_core.config import get_settings
        from meridian_core.domain.services.identity_store import IdentityStore
        from meridian_core.domain.services.sites import SiteRegistryService
        from meridian_core.infra.db import session_scope

        settings = get_settings()
        with session_scope() as session:
            connected = [site.url for site in SiteRegistryService(session).list_sites()]
            stats = IdentityStore(session).prune_disconnected_sites(
                connected, batch_size=settings.cleanup_batch_size
            )

        completed_at = _now_utc()

        return {
            "status": "success",
            **stats,
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "duration_seconds": int((completed_at - started_at).total_seconds()),
        }

    except Exception as exc:
        completed_at = _now_utc()

        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

        return {
            "status": "failed",
            "error": str(exc),
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
        }
