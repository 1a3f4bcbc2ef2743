"""Outbound user synchronization for brand nodes.

Every local user is pushed to the governing node so it can maintain the
deduplicated identity table. A per-user marker (``user_sync_states``)
keeps at most one delivery in flight per user:

    unsynced --schedule--> in_progress --deliver ok--> synced
                               |
                               +--attempt N == max--> failed

A significant change (currently: the email address) marks a synced user
stale so it is delivered again. ``failed`` users, and users whose job is
stuck outside a worker, are only rescheduled on an explicit forced resync.

Delivery attempts are counted by the job ledger. A failed attempt is
re-enqueued with exponential backoff until ``sync_max_retries`` attempts
have been made; the last failure marks the user ``failed`` and notifies
the administrator.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.config import Settings
from meridian_core.domain.models import BrandUser, JobStatus, SyncStatus, UserSyncState
from meridian_core.domain.services.brand_users import BrandUserService
from meridian_core.domain.services.job_queue import JOB_SYNC_DELIVER_USER, JobQueue
from meridian_core.domain.services.jobs import JobService
from meridian_core.domain.services.notifications import AdminNotifier
from meridian_core.domain.site_urls import normalize_site_url
from meridian_core.observability import get_logger
from meridian_core.providers import GoverningSiteClient, RemoteNodeError, make_governing_client

logger = get_logger(__name__)

SYNC_QUEUE = "sync"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"

# Changes that require the governing node to hear about the user again
SIGNIFICANT_FIELDS = ("email",)


@dataclass
class BackfillReport:
    """Outcome of a full user backfill."""

    batch_size: int
    total_users_sent: int = 0
    total_batches_sent: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    responses: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_users_sent": self.total_users_sent,
            "total_batches_sent": self.total_batches_sent,
            "batch_size": self.batch_size,
            "errors": self.errors,
            "responses": self.responses,
        }


class UserSyncService:
    """Schedules and delivers user records to the governing node."""

    def __init__(
        self,
        db: DBSession,
        settings: Settings,
        queue: JobQueue,
        client: Optional[GoverningSiteClient] = None,
    ):
        """Initialize the sync producer.

        Args:
            db: SQLAlchemy database session.
            settings: Node settings (governing URL, api key, retry policy).
            queue: Queue that runs delivery jobs.
            client: Governing node client; built from settings when omitted.
        """
        self.db = db
        self.settings = settings
        self.queue = queue
        self._client = client
        self.jobs = JobService(
            db,
            backoff_base_seconds=settings.sync_backoff_base_seconds,
            backoff_max_seconds=settings.sync_backoff_max_seconds,
        )
        self.users = BrandUserService(db)
        self.notifier = AdminNotifier(db)

    @property
    def client(self) -> GoverningSiteClient:
        if self._client is None:
            self._client = make_governing_client(self.settings)
            if self._client is None:
                raise RemoteNodeError("Governing site is not configured")
        return self._client

    # -------------------------------------------------------------------------
    # Marker
    # -------------------------------------------------------------------------

    def get_state(self, user_id: int) -> UserSyncState:
        state = self.db.get(UserSyncState, user_id)
        if state is None:
            state = UserSyncState(user_id=user_id, status=SyncStatus.UNSYNCED)
            self.db.add(state)
            self.db.flush()
        return state

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def on_user_created(self, user: BrandUser):
        """Schedule the first delivery of a new user."""
        return self.schedule(user.id, ACTION_CREATE)

    def on_user_changed(self, user: BrandUser, old: dict[str, Any]):
        """Schedule a delivery if the change matters to the governing node.

        Args:
            user: The user after the change.
            old: Snapshot of the user before the change (see ``user_snapshot``).

        Returns:
            The scheduled job, or None when nothing was scheduled.
        """
        changes = self.significant_changes(user, old)
        if not changes:
            return None

        state = self.get_state(user.id)
        if state.status == SyncStatus.SYNCED:
            state.status = SyncStatus.UNSYNCED
            self.db.flush()

        return self.schedule(user.id, ACTION_UPDATE, changes=changes)

    @staticmethod
    def significant_changes(user: BrandUser, old: dict[str, Any]) -> dict[str, dict[str, Any]]:
        changes = {}
        for name in SIGNIFICANT_FIELDS:
            before, after = old.get(name), getattr(user, name)
            if before != after:
                changes[name] = {"old": before, "new": after}
        return changes

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def build_record(
        self,
        user: BrandUser,
        action: str = ACTION_CREATE,
        changes: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """The wire record describing one local user."""
        return {
            "user_id": user.id,
            "email": user.email,
            "username": user.login,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "roles": list(user.roles_json or []),
            "site_name": self.settings.site_name,
            "site_url": normalize_site_url(self.settings.site_url),
            "action": action,
            "changes": changes or {},
        }

    def schedule(
        self,
        user_id: int,
        action: str,
        changes: Optional[dict[str, Any]] = None,
        force: bool = False,
        tick: Optional[int] = None,
    ):
        """Create and enqueue a delivery job unless one is pointless or live.

        Duplicate calls within the same second collapse onto one ledger row
        through the ``user_id:action:tick`` dedupe key.

        Args:
            user_id: Local user id.
            action: ``create`` or ``update``.
            changes: Significant field changes to report.
            force: Reschedule a ``synced`` or ``failed`` user, or one whose
                job is no longer running.
            tick: Scheduling tick (defaults to the current second).

        Returns:
            The scheduled job, or None when skipped.

        Raises:
            ValueError: If the user does not exist.
        """
        user = self.users.get_user(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")

        state = self.get_state(user_id)
        if state.status == SyncStatus.IN_PROGRESS and not (force and self._release_stale_job(state)):
            logger.info("Sync already in progress, skipping", user_id=user_id)
            return None
        if state.status == SyncStatus.SYNCED and not force:
            logger.debug("User already synced, skipping", user_id=user_id)
            return None
        if state.status == SyncStatus.FAILED and not force:
            logger.info("User sync previously failed, waiting for forced resync", user_id=user_id)
            return None

        tick = int(time.time()) if tick is None else tick
        job, created = self.jobs.create_job_or_get(
            queue_name=SYNC_QUEUE,
            job_type=JOB_SYNC_DELIVER_USER,
            payload={
                "user_id": user_id,
                "action": action,
                "user": self.build_record(user, action, changes),
            },
            max_attempts=self.settings.sync_max_retries,
            dedupe_key=f"sync:{user_id}:{action}:{tick}",
        )

        state.status = SyncStatus.IN_PROGRESS
        state.last_job_id = job.id
        state.last_error = None
        self.db.flush()

        if created:
            # The ledger row must be durable before the broker hands out its id
            self.db.commit()
            self.queue.enqueue(JOB_SYNC_DELIVER_USER, {"job_id": job.id})
            logger.info("User sync scheduled", user_id=user_id, action=action, job_id=job.id)

        return job

    def _release_stale_job(self, state: UserSyncState) -> bool:
        """Let a forced resync replace the marker's job unless it is running.

        A queued or retrying job is cancelled so a late message for it is
        skipped. Returns False while a worker holds the job.
        """
        job = self.jobs.get_job(state.last_job_id) if state.last_job_id else None
        if job is not None:
            self.db.refresh(job)
            if job.status == JobStatus.RUNNING:
                return False
            self.jobs.cancel_job(job.id, "Superseded by a forced resync")
        logger.warning(
            "Replacing stale sync job",
            user_id=state.user_id,
            job_id=state.last_job_id,
            job_status=job.status if job is not None else None,
        )
        return True

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def deliver(self, job_id: int) -> bool:
        """Run one delivery attempt for a ledger job.

        Args:
            job_id: Ledger id of a ``sync.deliver_user`` job.

        Returns:
            True if the governing node accepted the record.
        """
        job = self.jobs.get_job(job_id)
        if job is None:
            logger.warning("Sync job not found", job_id=job_id)
            return False
        if not self.jobs.claim_job(job_id):
            logger.info("Sync job not claimable, skipping", job_id=job_id, status=job.status)
            return False
        self.db.refresh(job)

        user_id = job.payload_json["user_id"]
        record = job.payload_json["user"]
        state = self.get_state(user_id)

        error = None
        try:
            response = await self.client.send_users([record])
            if response.status_code != 200 or response.data.get("success") is not True:
                error = f"Governing site did not accept the user: {response.data}"
        except RemoteNodeError as e:
            error = str(e)
        except Exception as e:
            logger.exception("Unexpected error delivering user", user_id=user_id, job_id=job_id)
            error = JobService.serialize_error(e)

        if error is None:
            self.jobs.complete_job(job_id)
            state.status = SyncStatus.SYNCED
            state.last_error = None
            self.db.commit()
            logger.info("User synced", user_id=user_id, job_id=job_id, attempt=job.attempts)
            return True

        outcome = self.jobs.fail_job(job_id, error)
        state.last_error = error

        if outcome.is_terminal:
            state.status = SyncStatus.FAILED
            self.notifier.sync_failed(
                user_id=user_id,
                email=record.get("email", ""),
                attempts=outcome.attempts,
                error=error,
                governing_site_url=self.settings.governing_site_url,
            )
            self.db.commit()
            return False

        self.db.commit()
        logger.warning(
            "User sync attempt failed, retrying",
            user_id=user_id,
            job_id=job_id,
            attempt=outcome.attempts,
            retry_in_seconds=outcome.retry_in_seconds,
            error=error,
        )
        self.queue.enqueue(
            JOB_SYNC_DELIVER_USER, {"job_id": job_id}, delay=outcome.retry_in_seconds
        )
        return False

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    async def send_all_users_for_deduplication(self) -> BackfillReport:
        """Send every local user to the governing node in fixed-size batches.

        A failed batch is recorded and the remaining batches are still sent.
        """
        report = BackfillReport(batch_size=self.settings.sync_batch_size)

        for number, page in enumerate(self.users.iter_pages(self.settings.sync_batch_size), start=1):
            records = [self.build_record(user) for user in page]
            try:
                response = await self.client.send_users(records)
            except RemoteNodeError as e:
                logger.warning("Backfill batch failed", batch=number, error=str(e))
                report.errors.append({"batch": number, "error": str(e)})
                continue

            if response.data.get("success") is not True:
                report.errors.append({"batch": number, "error": "Governing site rejected the batch"})
                continue

            report.total_users_sent += len(records)
            report.total_batches_sent += 1
            report.responses.append({"batch": number, **response.data})

        logger.info(
            "Backfill finished",
            users_sent=report.total_users_sent,
            batches_sent=report.total_batches_sent,
            errors=len(report.errors),
        )
        return report
