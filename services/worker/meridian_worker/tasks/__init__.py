"""Meridian Worker Tasks."""

# Import all tasks to register them with Celery
from meridian_worker.tasks import dedupe  # noqa: F401
from meridian_worker.tasks import maintenance  # noqa: F401
from meridian_worker.tasks import sync  # noqa: F401
