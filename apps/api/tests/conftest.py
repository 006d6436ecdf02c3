"""
Shared fixtures: in-memory SQLite database, simulated clock, in-memory push
channel and a fully wired service graph.
"""

import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PUSH_CHANNEL_BACKEND", "memory")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("LICENSE_SIGNING_SECRET", "test-license-signing-secret")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from aurora_sync.config import settings
from aurora_sync.core.push_channel import InMemoryPushChannel
from aurora_sync.models import Base
from aurora_sync.schemas.terminals import TerminalInfo
from aurora_sync.services.container import build_services
from aurora_sync.services.plan_catalog import PlanCatalog

MACHINE_A = "machine-a-5e884898"
MACHINE_B = "machine-b-6b86b273"
MACHINE_C = "machine-c-d4735e3a"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = Session(bind=engine, autoflush=False)
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def channel():
    return InMemoryPushChannel()


@pytest.fixture
def catalog():
    return PlanCatalog.from_settings(settings)


@pytest.fixture
def services(db, channel, clock, catalog):
    return build_services(db, channel=channel, clock=clock, catalog=catalog)


@pytest.fixture
def checkout(services):
    """Complete a checkout and return the transition result."""

    def _checkout(customer_id="cust_1001", plan_id="professional", billing_cycle="monthly", **kwargs):
        return services.state.activate_from_checkout(
            customer_id=customer_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            **kwargs,
        )

    return _checkout


@pytest.fixture
def connect(services, channel):
    """Register a terminal and open its live stream."""

    def _connect(license_key, machine_id_hash, open_stream=True, **info):
        if open_stream:
            channel.open_stream(license_key, machine_id_hash)
        return services.registry.register_session(
            license_key,
            TerminalInfo(machine_id_hash=machine_id_hash, **info),
        )

    return _connect
