"""Job queue abstraction.

Producers enqueue ``(job_type, payload, delay)``; consumers register one
handler per job type with ``on_execute``. The production queue hands jobs
to Celery (``send_task`` with a countdown) and the worker dispatches them
back through ``execute``. Tests use the in-memory queue and drive it with
``run_pending``.
"""

import inspect
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from celery import Celery

from meridian_core.observability import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[dict[str, Any]], Any]

# Job types
JOB_SYNC_DELIVER_USER = "sync.deliver_user"
JOB_SYNC_BACKFILL = "sync.backfill_users"
JOB_DEDUPE_APPLY = "dedupe.apply_users"

# Celery queue per job type prefix
QUEUE_ROUTES = {
    "sync": "sync",
    "dedupe": "dedupe",
}


class UnknownJobTypeError(LookupError):
    """Raised when no handler is registered for a job type."""

    pass


class JobQueue(ABC):
    """Delayed job queue with per-type handlers."""

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}

    @abstractmethod
    def enqueue(self, job_type: str, payload: dict[str, Any], delay: float = 0) -> str:
        """Queue a job for execution after ``delay`` seconds.

        Returns:
            An opaque message id.
        """

    def on_execute(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler that runs jobs of ``job_type``."""
        self._handlers[job_type] = handler

    def has_handler(self, job_type: str) -> bool:
        return job_type in self._handlers

    async def execute(self, job_type: str, payload: dict[str, Any]) -> Any:
        """Run one job through its registered handler.

        Handlers may be plain functions or coroutine functions.

        Raises:
            UnknownJobTypeError: If no handler is registered.
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(f"No handler registered for job type '{job_type}'")

        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result


class CeleryJobQueue(JobQueue):
    """Queue backed by a Celery broker.

    Jobs are sent by task name, which equals the job type, so the core
    package never imports the worker package.
    """

    def __init__(self, celery_app: Celery):
        super().__init__()
        self.celery_app = celery_app

    def enqueue(self, job_type: str, payload: dict[str, Any], delay: float = 0) -> str:
        queue = QUEUE_ROUTES.get(job_type.split(".", 1)[0], "default")
        result = self.celery_app.send_task(
            job_type,
            kwargs={"payload": payload},
            countdown=max(delay, 0) or None,
            queue=queue,
        )
        logger.debug("Job enqueued", job_type=job_type, queue=queue, delay=delay, task_id=result.id)
        return result.id


@dataclass
class QueuedJob:
    """A job held by the in-memory queue."""

    message_id: str
    job_type: str
    payload: dict[str, Any]
    delay: float


class InMemoryJobQueue(JobQueue):
    """Process-local queue for tests and single-process tooling.

    Delays are recorded but not waited for: ``run_pending`` executes every
    queued job in FIFO order, including jobs enqueued by handlers while it
    runs.
    """

    def __init__(self):
        super().__init__()
        self.pending: list[QueuedJob] = []
        self.history: list[QueuedJob] = []

    def enqueue(self, job_type: str, payload: dict[str, Any], delay: float = 0) -> str:
        job = QueuedJob(uuid.uuid4().hex, job_type, dict(payload), delay)
        self.pending.append(job)
        self.history.append(job)
        return job.message_id

    async def run_pending(self, max_jobs: Optional[int] = None) -> int:
        """Execute queued jobs until the queue is empty.

        Args:
            max_jobs: Stop after this many executions.

        Returns:
            Number of jobs executed.
        """
        executed = 0
        while self.pending and (max_jobs is None or executed < max_jobs):
            job = self.pending.pop(0)
            await self.execute(job.job_type, job.payload)
            executed += 1
        return executed

    def enqueued(self, job_type: str) -> list[QueuedJob]:
        """Every job of a type ever enqueued, executed or not."""
        return [job for job in self.history if job.job_type == job_type]
