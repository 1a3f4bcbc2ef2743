"""Identity store ingestion tasks (governing node)."""

from typing import Any

from meridian_worker.celery_app import app
from meridian_worker.util.job_runner import run_job


@app.task(name="dedupe.apply_users", bind=True, max_retries=3)
def apply_users(self, payload: dict[str, Any]) -> dict:
    """Merge an accepted batch of user records into the identity store.

    Merging is idempotent, so a failed run is retried as a whole.

    Args:
        payload: Dictionary containing:
            - users: Sanitized user records

    Returns:
        Dictionary with status and the number of applied records.
    """
    from meridian_core.domain.services.job_queue import JOB_DEDUPE_APPLY

    users = payload.get("users") or []
    try:
        applied = run_job(JOB_DEDUPE_APPLY, {"users": users})
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (self.request.retries + 1))
        raise

    return {"status": "success", "users_applied": applied}
