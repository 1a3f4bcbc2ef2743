"""Database engine and sessions for Meridian nodes.

The API opens one session per request through ``api.deps``; worker tasks
and scripts use ``session_scope``.
"""

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from meridian_core.config import get_settings

# MySQL drops idle connections after wait_timeout
MYSQL_POOL_RECYCLE_SECONDS = 3600


@lru_cache
def get_sync_engine() -> Engine:
    url = get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    return create_engine(url, pool_pre_ping=True, pool_recycle=MYSQL_POOL_RECYCLE_SECONDS)


@lru_cache
def get_sync_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_sync_engine(), autoflush=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session committed when the block exits cleanly, rolled back otherwise."""
    with get_sync_session_factory()() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
