"""
Migration environment for the license sync schema.

``sqlalchemy.url`` is taken from ``DATABASE_URL`` via the application
settings so migrations and the API always target the same database.
"""

from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text
from sqlalchemy.engine import Connection, make_url

from alembic import context

from aurora_sync.config import settings
from aurora_sync.core.logging import get_logger
from aurora_sync.models import metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = get_logger("alembic.env")


def database_url() -> str:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return settings.database_url


def apply_session_limits(connection: Connection) -> None:
    """PostgreSQL only: give up on lock waits instead of stalling the delivery sweep."""
    if connection.dialect.name == "postgresql":
        connection.execute(text("SET lock_timeout = '30s'"))
        connection.execute(text("SET statement_timeout = '10min'"))


def run_migrations_offline() -> None:
    context.configure(
        url=database_url(),
        target_metadata=metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = database_url()
    logger.info("migrations_starting", host=make_url(url).host, database=make_url(url).database)
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            apply_session_limits(connection)
            context.configure(
                connection=connection,
                target_metadata=metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
