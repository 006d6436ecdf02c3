"""Database engine, session factories and the async Redis client used for push presence."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import redis.asyncio as redis
from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .core.logging import get_logger

logger = get_logger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        # Shared between the API thread pool and the TestClient portal
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_recycle": 1800,
    }


def build_engine(url: str) -> Engine:
    built = create_engine(url, **_engine_options(url))
    if built.dialect.name == "sqlite":
        @event.listens_for(built, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return built


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def db_session() -> Iterator[Session]:
    """Session scope for Celery tasks. Commits are left to the services."""
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Iterator[Session]:
    with db_session() as session:
        yield session


def check_db() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("database_unreachable", error_type=type(exc).__name__)
        return False
    return True


async def create_redis_client() -> redis.Redis:
    """Connect and ping; a failure here aborts application startup."""
    client = redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    await client.ping()
    logger.info("redis_connected", host=make_url(settings.redis_url).host)
    return client


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    if client is not None:
        await client.aclose()


def get_redis(request: Request) -> redis.Redis:
    client = getattr(request.app.state, "redis", None)
    if client is None:
        raise RuntimeError("redis client missing from app.state; lifespan did not run")
    return client
