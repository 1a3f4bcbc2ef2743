"""Handlers for every job type, bound to a queue.

Each handler opens its own session: jobs run outside any request scope.
"""

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.orm import Session, sessionmaker

from meridian_core.config import Settings
from meridian_core.domain.services.dedup_receiver import DeduplicationReceiver
from meridian_core.domain.services.job_queue import (
    JOB_DEDUPE_APPLY,
    JOB_SYNC_BACKFILL,
    JOB_SYNC_DELIVER_USER,
    JobQueue,
)
from meridian_core.domain.services.user_sync import UserSyncService


@contextmanager
def _scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def register_job_handlers(
    queue: JobQueue,
    session_factory: sessionmaker[Session],
    settings: Settings,
    governing_client=None,
) -> JobQueue:
    """Register the sync and dedupe handlers on ``queue``.

    Args:
        queue: The queue that will execute the jobs (and receive retries).
        session_factory: Source of database sessions.
        settings: Node settings.
        governing_client: Optional client override for sync deliveries.

    Returns:
        The same queue, for chaining.
    """

    async def deliver_user(payload: dict[str, Any]) -> bool:
        with _scope(session_factory) as session:
            service = UserSyncService(session, settings, queue, client=governing_client)
            return await service.deliver(int(payload["job_id"]))

    async def backfill_users(payload: dict[str, Any]) -> dict[str, Any]:
        with _scope(session_factory) as session:
            service = UserSyncService(session, settings, queue, client=governing_client)
            report = await service.send_all_users_for_deduplication()
            return report.to_dict()

    def apply_users(payload: dict[str, Any]) -> int:
        with _scope(session_factory) as session:
            return DeduplicationReceiver(session).apply(payload.get("users") or [])

    queue.on_execute(JOB_SYNC_DELIVER_USER, deliver_user)
    queue.on_execute(JOB_SYNC_BACKFILL, backfill_users)
    queue.on_execute(JOB_DEDUPE_APPLY, apply_users)
    return queue
