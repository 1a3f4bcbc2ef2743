"""Job ledger service for Meridian.

The ledger is the durable half of the job queue: every queued unit of work
has a row here carrying its attempt count, retry schedule and dedupe key.
The broker only carries the job id, so redelivered or duplicated messages
are harmless: a job can be claimed by exactly one worker at a time.

    queued --claim--> running --complete--> done
                         |
                         +--fail, attempts left--> retrying --claim--> running
                         +--fail, last attempt---> failed

``done`` and ``failed`` release the dedupe key so the same work can be
queued again later.
"""

import hashlib
import json
import traceback
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Query
from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import Job, JobStatus, utcnow

CLAIMABLE_STATUSES = (JobStatus.QUEUED, JobStatus.RETRYING)
DEFAULT_MAX_ATTEMPTS = 5
MAX_ERROR_LENGTH = 5000


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential retry delay: ``min(2^attempts * base, cap)`` seconds."""

    base_seconds: int = 60
    max_seconds: int = 3600

    def delay(self, attempts: int) -> int:
        return min((2 ** max(attempts, 0)) * self.base_seconds, self.max_seconds)


@dataclass
class FailureOutcome:
    """What ``fail_job`` decided.

    Attributes:
        status: ``retrying`` or ``failed``
        attempts: Attempts made so far
        retry_in_seconds: Delay before the next attempt (0 when terminal)
    """

    status: str
    attempts: int
    retry_in_seconds: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.FAILED


def _truncate(text: str) -> str:
    if len(text) <= MAX_ERROR_LENGTH:
        return text
    return text[: MAX_ERROR_LENGTH - 3] + "..."


class JobService:
    """Service for job ledger operations."""

    def __init__(
        self,
        db: DBSession,
        backoff_base_seconds: int = BackoffPolicy.base_seconds,
        backoff_max_seconds: int = BackoffPolicy.max_seconds,
    ):
        self.db = db
        self.backoff = BackoffPolicy(backoff_base_seconds, backoff_max_seconds)

    def _set(self, job_id: int, *conditions, **values: Any) -> int:
        """Update one job row in place; returns the number of rows changed."""
        values.setdefault("updated_at", utcnow())
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return result.rowcount

    def _filtered(
        self,
        queue_name: Optional[str],
        job_type: Optional[str],
        status: Optional[str],
    ) -> Query:
        query = self.db.query(Job)
        for column, value in ((Job.queue_name, queue_name), (Job.job_type, job_type), (Job.status, status)):
            if value:
                query = query.filter(column == value)
        return query

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    @staticmethod
    def compute_dedupe_key(queue_name: str, job_type: str, payload: dict[str, Any]) -> str:
        """Key shared by every job with the same queue, type and payload."""
        canonical = json.dumps(
            [queue_name, job_type, payload], sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def create_job_or_get(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        run_at=None,
        dedupe: bool = True,
        dedupe_key: Optional[str] = None,
    ) -> tuple[Job, bool]:
        """Create a job, or return the live job holding the same dedupe key.

        Args:
            queue_name: The queue to place the job in.
            job_type: The type of job.
            payload: The job payload data.
            max_attempts: Attempts allowed before the job is marked failed.
            run_at: Optional scheduled execution time.
            dedupe: Whether to use deduplication.
            dedupe_key: Explicit key; computed from the payload when omitted.

        Returns:
            Tuple of (Job, created).
        """
        key = None
        if dedupe:
            key = dedupe_key or self.compute_dedupe_key(queue_name, job_type, payload)
            existing = self.get_job_by_dedupe_key(key)
            if existing is not None:
                return existing, False

        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload_json=payload,
            status=JobStatus.QUEUED,
            max_attempts=max_attempts,
            next_run_at=run_at,
            dedupe_key=key,
        )
        self.db.add(job)
        self.db.flush()
        return job, True

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.db.get(Job, job_id)

    def get_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        return self.db.query(Job).filter(Job.dedupe_key == dedupe_key).first()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def claim_job(self, job_id: int) -> bool:
        """Move a queued or retrying job to running and count the attempt.

        The status check and the transition are one UPDATE, so of several
        workers racing for the same job exactly one wins.
        """
        claimed = self._set(
            job_id,
            Job.status.in_(CLAIMABLE_STATUSES),
            status=JobStatus.RUNNING,
            attempts=Job.attempts + 1,
        )
        return claimed > 0

    def complete_job(self, job_id: int) -> None:
        self._set(job_id, status=JobStatus.DONE, dedupe_key=None, last_error=None)

    def cancel_job(self, job_id: int, reason: str) -> bool:
        """Fail a job that has not been claimed yet, without using an attempt.

        A message still in flight for the job will find it unclaimable.
        """
        cancelled = self._set(
            job_id,
            Job.status.in_(CLAIMABLE_STATUSES),
            status=JobStatus.FAILED,
            last_error=_truncate(reason),
            dedupe_key=None,
        )
        return cancelled > 0

    def fail_job(
        self,
        job_id: int,
        error: Union[str, Exception],
        include_traceback: bool = False,
    ) -> Optional[FailureOutcome]:
        """Record a failed attempt.

        Returns:
            The outcome, or None if the job does not exist.
        """
        job = self.get_job(job_id)
        if job is None:
            return None
        self.db.refresh(job)

        last_error = self.serialize_error(error, include_traceback)
        if job.attempts >= job.max_attempts:
            self._set(job_id, status=JobStatus.FAILED, last_error=last_error, dedupe_key=None)
            return FailureOutcome(JobStatus.FAILED, job.attempts)

        delay = self.calculate_backoff(job.attempts)
        now = utcnow()
        self._set(
            job_id,
            status=JobStatus.RETRYING,
            last_error=last_error,
            next_run_at=now + timedelta(seconds=delay),
            updated_at=now,
        )
        return FailureOutcome(JobStatus.RETRYING, job.attempts, delay)

    def calculate_backoff(self, attempts: int) -> int:
        return self.backoff.delay(attempts)

    @staticmethod
    def serialize_error(error: Union[str, Exception], include_traceback: bool = False) -> str:
        """Render an error for the ``last_error`` column."""
        if isinstance(error, BaseException):
            if include_traceback:
                text = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            else:
                text = f"{type(error).__name__}: {error}"
        else:
            text = str(error)
        return _truncate(text)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def list_jobs(
        self,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]:
        """Newest jobs first, optionally filtered."""
        return (
            self._filtered(queue_name, job_type, status)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .limit(limit)
            .all()
        )

    def count_jobs(
        self,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> int:
        return self._filtered(queue_name, job_type, status).count()
