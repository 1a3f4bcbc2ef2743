"""Fixtures for worker tests.

Tasks run eagerly in-process. Broker, database and peer nodes are replaced
by in-memory backends or mocks.
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock

import pytest

WORKER_ROOT = Path(__file__).resolve().parent.parent
for root in (WORKER_ROOT, WORKER_ROOT.parent / "core"):
    sys.path.insert(0, str(root))

# Read by the node settings when celery_app is first imported
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")


@pytest.fixture
def mock_celery_app():
    """The worker app, executing tasks synchronously."""
    from meridian_worker.celery_app import app

    app.conf.update(task_always_eager=True, task_eager_propagates=True)
    return app


@pytest.fixture
def mock_db_session():
    return MagicMock(name="session")


@pytest.fixture
def mock_session_scope(mock_db_session):
    """Replacement for ``session_scope`` yielding ``mock_db_session``."""

    @contextmanager
    def scope():
        yield mock_db_session

    return scope


@pytest.fixture
def mock_settings():
    settings = MagicMock(name="settings")
    settings.site_type = "governing"
    settings.cleanup_batch_size = 50
    return settings


@pytest.fixture
def bound_request():
    """Push a request onto a task so ``task.run`` sees ``self.request.retries``.

    Every pushed request is popped at teardown.
    """
    pushed = []

    def push(task, retries: int = 0):
        task.push_request(id="test-task-id-123", retries=retries)
        pushed.append(task)
        return task

    yield push

    while pushed:
        pushed.pop().pop_request()
