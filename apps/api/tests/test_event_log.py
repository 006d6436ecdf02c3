"""
Event log append, 24-hour replay window and garbage collection.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from aurora_sync.core.exceptions import InvalidEventPayloadError
from aurora_sync.models import EventDelivery, SubscriptionEvent
from aurora_sync.models.enums import EventType
from conftest import MACHINE_A


def revoked(clock, reason="subscription_cancelled"):
    return {"reason": reason, "revoked_at": clock.now.isoformat(), "should_disable": True}


@pytest.fixture
def log(services):
    return services.publisher.log


class TestAppend:
    def test_record_validates_and_normalizes(self, db, clock, log):
        event = log.record("AUR-PRO-V2-ABCDEFGH-0123ABCD", EventType.LICENSE_REVOKED, revoked(clock))
        db.commit()

        assert event.event_id.startswith("evt_")
        assert event.created_at == clock.now
        assert event.expires_at == clock.now + timedelta(hours=24)
        assert event.payload["grace_period_end"] is None

    def test_invalid_payload_is_rejected(self, db, log):
        with pytest.raises(InvalidEventPayloadError) as exc_info:
            log.record("AUR-PRO-V2-ABCDEFGH-0123ABCD", EventType.LICENSE_REVOKED, {"should_disable": True})

        assert exc_info.value.details["event_type"] == "license_revoked"
        assert db.scalar(select(func.count()).select_from(SubscriptionEvent)) == 0

    def test_unknown_event_type_is_rejected(self, log):
        with pytest.raises(InvalidEventPayloadError):
            log.record("AUR-PRO-V2-ABCDEFGH-0123ABCD", "license_exploded", {})


class TestReplay:
    KEY = "AUR-PRO-V2-ABCDEFGH-0123ABCD"

    def test_replay_bound_is_inclusive(self, db, clock, log):
        first = log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock))
        first_at = clock.now
        clock.advance(minutes=5)
        second = log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock))
        second_at = clock.now
        log.append("AUR-BAS-V2-ZZZZZZZZ-FFFF0000", EventType.LICENSE_REVOKED, revoked(clock))
        db.commit()

        assert [e.event_id for e in log.replay_since(self.KEY, first_at).events] == [first, second]
        assert [e.event_id for e in log.replay_since(self.KEY, second_at).events] == [second]
        assert log.replay_since(self.KEY, second_at + timedelta(seconds=1)).events == []

    def test_replay_returns_events_from_the_bound_in_order(self, db, clock, log):
        created = []
        for _ in range(5):
            clock.advance(minutes=10)
            created.append((log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock)), clock.now))
        db.commit()

        third_at = created[2][1]
        result = log.replay_since(self.KEY, third_at - timedelta(seconds=30))

        assert [e.event_id for e in result.events] == [event_id for event_id, _ in created[2:]]
        assert not result.replay_gap

    def test_naive_since_is_read_as_utc(self, db, clock, log):
        event_id = log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock))
        db.commit()
        clock.advance(hours=1)

        result = log.replay_since(self.KEY, (clock.now - timedelta(hours=2)).replace(tzinfo=None))

        assert [e.event_id for e in result.events] == [event_id]
        assert result.since.tzinfo is not None
        assert not result.replay_gap

    def test_replay_within_window_has_no_gap(self, db, clock, log):
        log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock))
        db.commit()
        clock.advance(hours=2)

        result = log.replay_since(self.KEY, clock.now - timedelta(hours=3))

        assert not result.replay_gap
        assert len(result.envelopes()) == 1
        assert result.window_start == clock.now - timedelta(hours=24)

    def test_replay_beyond_window_reports_gap(self, db, clock, log):
        log.append(self.KEY, EventType.LICENSE_REVOKED, revoked(clock))
        db.commit()
        clock.advance(hours=25)

        result = log.replay_since(self.KEY, clock.now - timedelta(hours=26))

        assert result.replay_gap
        assert result.events == []


class TestPurge:
    def test_expired_events_and_deliveries_are_deleted(self, db, clock, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        services.state.mark_past_due(result.subscription.id)
        clock.advance(hours=12)
        services.state.restore_on_payment_recovery(result.subscription.id)

        clock.advance(hours=13)
        deleted = services.publisher.log.purge_expired()

        # The registration event and the past-due event are older than 24h
        assert deleted == 2
        remaining = db.scalars(select(SubscriptionEvent.event_type).order_by(SubscriptionEvent.id)).all()
        assert remaining == ["payment_succeeded", "subscription_reactivated"]
        orphaned = db.scalar(
            select(func.count())
            .select_from(EventDelivery)
            .where(EventDelivery.event_id.not_in(select(SubscriptionEvent.event_id)))
        )
        assert orphaned == 0
