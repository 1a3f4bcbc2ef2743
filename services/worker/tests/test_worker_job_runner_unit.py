"""Unit tests for dispatching Celery payloads to core job handlers."""

from unittest.mock import MagicMock, patch

from meridian_core.domain.services.job_queue import (
    JOB_DEDUPE_APPLY,
    JOB_SYNC_BACKFILL,
    JOB_SYNC_DELIVER_USER,
    CeleryJobQueue,
    InMemoryJobQueue,
)


class TestBuildJobQueue:
    def test_every_job_type_has_a_handler(self, mock_settings):
        from meridian_worker.util.job_runner import build_job_queue

        with patch("meridian_core.infra.db.get_sync_session_factory", return_value=MagicMock()), patch(
            "meridian_core.config.get_settings", return_value=mock_settings
        ):
            queue = build_job_queue()

        assert isinstance(queue, CeleryJobQueue)
        for job_type in (JOB_SYNC_DELIVER_USER, JOB_SYNC_BACKFILL, JOB_DEDUPE_APPLY):
            assert queue.has_handler(job_type)


class TestRunJob:
    def test_runs_async_handler_to_completion(self):
        from meridian_worker.util.job_runner import run_job

        queue = InMemoryJobQueue()

        async def handler(payload):
            return payload["job_id"] * 2

        queue.on_execute(JOB_SYNC_DELIVER_USER, handler)
        with patch("meridian_worker.util.job_runner.build_job_queue", return_value=queue):
            assert run_job(JOB_SYNC_DELIVER_USER, {"job_id": 21}) == 42

    def test_runs_plain_handler(self):
        from meridian_worker.util.job_runner import run_job

        queue = InMemoryJobQueue()
        queue.on_execute(JOB_DEDUPE_APPLY, lambda payload: len(payload["users"]))
        with patch("meridian_worker.util.job_runner.build_job_queue", return_value=queue):
            assert run_job(JOB_DEDUPE_APPLY, {"users": [1, 2]}) == 2
