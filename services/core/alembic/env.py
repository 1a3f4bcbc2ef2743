"""Alembic migration environment for Meridian.

The database URL comes from the node settings (``DATABASE_URL``), so
migrations always target the same database as the running node.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from meridian_core.config import get_settings
from meridian_core.domain.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_offline(url: str) -> None:
    """Emit the migration SQL without connecting."""
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    """Apply migrations over a dedicated, unpooled connection."""
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = url
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


database_url = get_settings().database_url

if context.is_offline_mode():
    run_offline(database_url)
else:
    run_online(database_url)
