"""Dispatch Celery task payloads to the core job handlers."""

import asyncio
from typing import Any

from meridian_worker.celery_app import app


def build_job_queue():
    """Celery-backed queue with every core handler registered.

    Retries enqueued by a handler go back through the same broker.
    """
    from meridian_core.config import get_settings
    from meridian_core.domain.services.job_handlers import register_job_handlers
    from meridian_core.domain.services.job_queue import CeleryJobQueue
    from meridian_core.infra.db import get_sync_session_factory

    return register_job_handlers(
        CeleryJobQueue(app),
        get_sync_session_factory(),
        get_settings(),
    )


def run_job(job_type: str, payload: dict[str, Any]) -> Any:
    """Execute one job synchronously inside a Celery task."""
    queue = build_job_queue()
    return asyncio.run(queue.execute(job_type, payload))
