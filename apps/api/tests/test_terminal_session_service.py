"""
Terminal session registry: quota, primary election, reconnects and the
stale-session sweep.
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from aurora_sync.core.exceptions import (
    ErrorCode,
    LicenseInactiveError,
    NotFoundError,
    TerminalQuotaExceededError,
    UnsupportedDatabaseError,
)
from aurora_sync.models import TerminalCoordinationEvent, TerminalSession
from aurora_sync.models.enums import AckStatus, ConnectionStatus
from aurora_sync.schemas.terminals import TerminalInfo
from aurora_sync.services.terminal_session_service import _upsert_statement
from conftest import MACHINE_A, MACHINE_B, MACHINE_C


def primaries(db, license_key):
    return list(
        db.scalars(
            select(TerminalSession.machine_id_hash).where(
                TerminalSession.license_key == license_key,
                TerminalSession.connection_status == ConnectionStatus.CONNECTED,
                TerminalSession.is_primary.is_(True),
            )
        ).all()
    )


def event_types(channel, machine_id_hash):
    return [envelope["event_type"] for envelope in channel.pushed_to(machine_id_hash)]


class TestRegistration:
    def test_first_terminal_becomes_primary(self, checkout, connect):
        key = checkout().license.license_key

        result = connect(key, MACHINE_A, terminal_name="Front counter")

        assert result.is_new
        assert result.is_primary
        assert result.connected_terminals == 1
        assert result.max_terminals == 3
        assert result.session.terminal_name == "Front counter"

    def test_second_terminal_is_announced(self, db, channel, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)

        result = connect(key, MACHINE_B)

        assert not result.is_primary
        assert primaries(db, key) == [MACHINE_A]
        added = [e for e in channel.pushed_to(MACHINE_A) if e["event_type"] == "terminal_added"]
        assert [e["payload"]["machine_id_hash"] for e in added] == [MACHINE_B]
        assert event_types(channel, MACHINE_B) == []

    def test_quota_counts_connected_terminals(self, services, checkout, connect):
        key = checkout(plan_id="basic").license.license_key
        connect(key, MACHINE_A)

        with pytest.raises(TerminalQuotaExceededError) as exc_info:
            connect(key, MACHINE_B)
        assert exc_info.value.details["max_terminals"] == 1

        # Re-registering the connected terminal is not a new seat
        assert connect(key, MACHINE_A).connected_terminals == 1

        services.registry.disconnect(key, MACHINE_A)
        assert connect(key, MACHINE_B).is_primary

    def test_reconnect_keeps_first_connected_at(self, clock, channel, services, checkout, connect):
        key = checkout().license.license_key
        first = connect(key, MACHINE_A).session.first_connected_at
        connect(key, MACHINE_B)
        services.registry.disconnect(key, MACHINE_A)

        clock.advance(hours=1)
        result = connect(key, MACHINE_A, app_version="2.4.1")

        assert not result.is_new
        assert result.session.first_connected_at == first
        assert result.session.last_connected_at == clock.now
        assert result.session.app_version == "2.4.1"
        assert "terminal_reconnected" in event_types(channel, MACHINE_B)

    def test_inactive_license_rejects_registration(self, services, checkout):
        result = checkout()
        services.state.deactivate(result.subscription.id, "subscription_cancelled")

        with pytest.raises(LicenseInactiveError):
            services.registry.register_session(result.license.license_key, TerminalInfo(machine_id_hash=MACHINE_A))

    def test_unknown_license(self, services):
        with pytest.raises(NotFoundError) as exc_info:
            services.registry.register_session("AUR-PRO-V2-NOPE0000-00000000", TerminalInfo(machine_id_hash=MACHINE_A))
        assert exc_info.value.error_code == ErrorCode.LICENSE_NOT_FOUND


class TestPrimaryElection:
    def test_disconnecting_primary_promotes_oldest(self, db, clock, channel, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        clock.advance(seconds=10)
        connect(key, MACHINE_B)
        clock.advance(seconds=10)
        connect(key, MACHINE_C)

        services.registry.disconnect(key, MACHINE_A)

        assert primaries(db, key) == [MACHINE_B]
        for machine in (MACHINE_B, MACHINE_C):
            changed = [e for e in channel.pushed_to(machine) if e["event_type"] == "primary_changed"]
            assert changed[-1]["payload"]["previous_primary"] == MACHINE_A
            assert changed[-1]["payload"]["new_primary"] == MACHINE_B

    def test_disconnecting_secondary_keeps_primary(self, db, channel, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)

        services.registry.disconnect(key, MACHINE_B)

        assert primaries(db, key) == [MACHINE_A]
        assert "primary_changed" not in event_types(channel, MACHINE_A)
        assert "terminal_removed" in event_types(channel, MACHINE_A)

    def test_disconnect_is_idempotent(self, channel, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)
        services.registry.disconnect(key, MACHINE_B)
        pushed = len(channel.pushed)

        session = services.registry.disconnect(key, MACHINE_B)

        assert session.connection_status == ConnectionStatus.DISCONNECTED
        assert len(channel.pushed) == pushed

    def test_reconnecting_terminal_does_not_steal_primary(self, db, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)
        services.registry.disconnect(key, MACHINE_A)

        result = connect(key, MACHINE_A)

        assert not result.is_primary
        assert primaries(db, key) == [MACHINE_B]


class TestHeartbeat:
    def test_heartbeat_refreshes_liveness(self, clock, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        clock.advance(seconds=45)

        session = services.registry.heartbeat(key, MACHINE_A)

        assert session.last_heartbeat_at == clock.now

    def test_heartbeat_after_stale_disconnect_reregisters(self, clock, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        clock.advance(seconds=301)
        services.registry.detect_stale()

        session = services.registry.heartbeat(key, MACHINE_A)

        assert session.connection_status == ConnectionStatus.CONNECTED
        assert session.is_primary

    def test_heartbeat_on_deactivated_session(self, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        services.state.deactivate(result.subscription.id, "subscription_cancelled")

        with pytest.raises(LicenseInactiveError):
            services.registry.heartbeat(result.license.license_key, MACHINE_A)

    def test_heartbeat_unknown_session(self, services, checkout):
        key = checkout().license.license_key
        with pytest.raises(NotFoundError) as exc_info:
            services.registry.heartbeat(key, MACHINE_A)
        assert exc_info.value.error_code == ErrorCode.SESSION_NOT_FOUND


class TestStaleSweep:
    def test_only_silent_terminals_are_disconnected(self, db, clock, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)
        clock.advance(seconds=200)
        services.registry.heartbeat(key, MACHINE_B)
        clock.advance(seconds=150)

        stale = services.registry.detect_stale()

        assert [session.machine_id_hash for session in stale] == [MACHINE_A]
        assert services.registry.get_session(key, MACHINE_A).connection_status == ConnectionStatus.DISCONNECTED
        assert primaries(db, key) == [MACHINE_B]

    def test_nothing_stale(self, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        assert services.registry.detect_stale() == []


class TestDeactivateTerminals:
    def test_broadcast_is_tracked_per_terminal(self, db, channel, services, checkout, connect):
        result = checkout()
        key = result.license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)

        machines = services.registry.deactivate_terminals(key)

        assert machines == [MACHINE_A, MACHINE_B]
        assert services.state.get_license(key).is_active
        record = db.scalar(select(TerminalCoordinationEvent).where(TerminalCoordinationEvent.license_key == key))
        assert record.delivery_status == {MACHINE_A: "pending", MACHINE_B: "pending"}
        assert "deactivation_broadcast" in event_types(channel, MACHINE_A)

        services.coordinator.acknowledge(record.event_id, MACHINE_A, AckStatus.SUCCESS)
        db.refresh(record)
        assert record.delivery_status == {MACHINE_A: "acknowledged", MACHINE_B: "pending"}

    def test_counts_only_live_sessions(self, db, services, checkout, connect):
        key = checkout().license.license_key
        connect(key, MACHINE_A)
        services.registry.deactivate_terminals(key)

        assert services.registry.deactivate_terminals(key) == []
        assert db.scalar(select(func.count()).select_from(TerminalCoordinationEvent)) == 1


class TestUpsertDialects:
    @staticmethod
    def bound_to(dialect):
        return SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name=dialect)))

    @pytest.mark.parametrize("dialect", ["postgresql", "sqlite"])
    def test_supported_dialects_build_on_conflict_insert(self, dialect):
        stmt = _upsert_statement(self.bound_to(dialect))
        assert hasattr(stmt, "on_conflict_do_update")

    def test_other_dialects_are_a_configuration_error(self):
        with pytest.raises(UnsupportedDatabaseError) as exc_info:
            _upsert_statement(self.bound_to("mysql"))

        assert exc_info.value.error_code == ErrorCode.UNSUPPORTED_DATABASE
        assert exc_info.value.http_status == 500
        assert exc_info.value.details == {"dialect": "mysql"}
