"""User sync tasks (brand node).

Delivery retries are owned by the job ledger: a failed attempt re-enqueues
the same ledger job with a backoff delay, so these tasks never use Celery's
own retry.
"""

from typing import Any

from meridian_worker.celery_app import app
from meridian_worker.util.job_runner import run_job


@app.task(name="sync.deliver_user", bind=True, max_retries=0)
def deliver_user(self, payload: dict[str, Any]) -> dict:
    """Deliver one user record to the governing site.

    Args:
        payload: Dictionary containing:
            - job_id: Ledger id of the delivery job

    Returns:
        Dictionary with status and job_id.
    """
    from meridian_core.domain.services.job_queue import JOB_SYNC_DELIVER_USER

    job_id = payload.get("job_id")
    if job_id is None:
        return {"status": "error", "error": "Missing job_id"}

    delivered = run_job(JOB_SYNC_DELIVER_USER, {"job_id": job_id})
    return {"status": "synced" if delivered else "not_synced", "job_id": job_id}


@app.task(name="sync.backfill_users", bind=True, max_retries=0)
def backfill_users(self, payload: dict[str, Any] | None = None) -> dict:
    """Send every local user to the governing site in batches.

    Returns:
        The backfill report.
    """
    from meridian_core.domain.services.job_queue import JOB_SYNC_BACKFILL

    return run_job(JOB_SYNC_BACKFILL, payload or {})
