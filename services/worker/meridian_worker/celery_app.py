"""Celery application for the Meridian worker.

Broker and result backend come from the node settings, so the worker and
the API process of one node always talk to the same Redis.
"""

from celery import Celery
from celery.schedules import crontab

from meridian_core.config import get_settings
from meridian_core.domain.services.job_queue import QUEUE_ROUTES

TASK_MODULES = [
    "meridian_worker.tasks.sync",
    "meridian_worker.tasks.dedupe",
    "meridian_worker.tasks.maintenance",
]

_settings = get_settings()

app = Celery(
    "meridian_worker",
    broker=_settings.celery_broker_url,
    backend=_settings.celery_result_backend,
    include=TASK_MODULES,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # A backfill walks every local user
    task_soft_time_limit=300,
    task_time_limit=600,
    task_routes={
        **{f"{prefix}.*": {"queue": queue} for prefix, queue in QUEUE_ROUTES.items()},
        "maintenance.*": {"queue": "maintenance"},
    },
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    beat_schedule={
        "daily-prune-disconnected-sites": {
            "task": "maintenance.prune_disconnected_sites",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)


if __name__ == "__main__":
    app.start()
