"""
At-least-once delivery: push, acknowledgment, backoff, ack timeout and
dead-lettering.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from aurora_sync.core.exceptions import ErrorCode, NotFoundError
from aurora_sync.models import DeadLetterEntry, EventAcknowledgment, EventDelivery, EventRetryRecord, SubscriptionEvent
from aurora_sync.models.enums import (
    AckStatus,
    DeadLetterStatus,
    DeliveryStatus,
    FailureClassification,
    RetryResult,
)
from aurora_sync.services.delivery_coordinator import enqueue_deliveries
from conftest import MACHINE_A, MACHINE_B


def delivery_for(db, event_id, machine_id_hash):
    return db.scalar(
        select(EventDelivery).where(
            EventDelivery.event_id == event_id,
            EventDelivery.machine_id_hash == machine_id_hash,
        )
    )


def retries_for(db, event_id, machine_id_hash):
    return list(
        db.scalars(
            select(EventRetryRecord)
            .where(
                EventRetryRecord.event_id == event_id,
                EventRetryRecord.machine_id_hash == machine_id_hash,
            )
            .order_by(EventRetryRecord.id)
        ).all()
    )


@pytest.fixture
def license_key(checkout):
    return checkout().license.license_key


class TestPushAndAcknowledge:
    def test_pushed_event_awaits_ack(self, db, clock, services, channel, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)

        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        delivery = delivery_for(db, event_id, MACHINE_A)
        assert delivery.status == DeliveryStatus.AWAITING_ACK
        assert delivery.next_attempt_at == clock.now + timedelta(seconds=30)
        assert [e["event_id"] for e in channel.pushed_to(MACHINE_A)] == [event_id]

    def test_ack_marks_delivered(self, db, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        ack = services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS, processing_time_ms=42)

        assert not ack.duplicate
        assert ack.delivery_status == DeliveryStatus.DELIVERED
        records = retries_for(db, event_id, MACHINE_A)
        assert [(r.attempt_number, r.result) for r in records] == [(1, RetryResult.ACKNOWLEDGED)]

    def test_duplicate_ack_is_idempotent(self, db, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS)
        again = services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS)

        assert again.duplicate
        count = db.scalar(
            select(func.count()).select_from(EventAcknowledgment).where(EventAcknowledgment.event_id == event_id)
        )
        assert count == 1
        assert len(retries_for(db, event_id, MACHINE_A)) == 1

    def test_success_after_failed_ack_replaces_it(self, db, clock, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        failed = services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.FAILED, error_message="db locked")
        assert failed.delivery_status == DeliveryStatus.PENDING
        delivery = delivery_for(db, event_id, MACHINE_A)
        assert delivery.retry_count == 1
        assert delivery.next_attempt_at == clock.now + timedelta(seconds=1)

        success = services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS)

        assert not success.duplicate
        assert success.acknowledgment.status == AckStatus.SUCCESS
        assert success.acknowledgment.error_message is None
        assert success.delivery_status == DeliveryStatus.DELIVERED

    def test_ack_for_unknown_event(self, services):
        with pytest.raises(NotFoundError) as exc_info:
            services.coordinator.acknowledge("evt_missing", MACHINE_A, AckStatus.SUCCESS)
        assert exc_info.value.error_code == ErrorCode.EVENT_NOT_FOUND


class TestRetries:
    def test_offline_terminal_backs_off_then_dead_letters(self, db, clock, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A, open_stream=False)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        # Not due yet
        assert services.coordinator.process_due().attempted == 0

        for _ in range(4):
            clock.advance(seconds=300)
            services.coordinator.process_due()

        delivery = delivery_for(db, event_id, MACHINE_A)
        assert delivery.status == DeliveryStatus.DEAD_LETTERED
        assert delivery.retry_count == 5

        records = retries_for(db, event_id, MACHINE_A)
        assert [r.attempt_number for r in records] == [1, 2, 3, 4, 5]
        assert {r.result for r in records} == {RetryResult.OFFLINE}
        assert [r.backoff_delay_ms for r in records] == [1000, 2000, 4000, 8000, None]

        entry = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.event_id == event_id))
        assert entry.status == DeadLetterStatus.PENDING_REVIEW
        assert entry.failure_classification == FailureClassification.RETRIES_EXHAUSTED
        assert entry.retry_count == 5
        assert len(entry.retry_history) == 5
        assert entry.payload["should_disable"] is False

    def test_ack_timeout_retries_push(self, db, clock, services, channel, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        clock.advance(seconds=31)
        sweep = services.coordinator.process_due()
        assert sweep.timed_out == 1
        assert delivery_for(db, event_id, MACHINE_A).status == DeliveryStatus.PENDING

        clock.advance(seconds=1)
        assert services.coordinator.process_due().attempted == 1
        assert [e["event_id"] for e in channel.pushed_to(MACHINE_A)] == [event_id, event_id]

        services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS)
        records = retries_for(db, event_id, MACHINE_A)
        assert [(r.attempt_number, r.result) for r in records] == [
            (1, RetryResult.TIMEOUT),
            (2, RetryResult.ACKNOWLEDGED),
        ]

    def test_channel_failure_counts_as_attempt(self, db, services, channel, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        channel.fail_with = ConnectionError("redis down")

        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        delivery = delivery_for(db, event_id, MACHINE_A)
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.last_error == "Push channel unavailable"
        (record,) = retries_for(db, event_id, MACHINE_A)
        assert record.result == RetryResult.FAILED

    def test_disconnected_terminal_is_not_pushed(self, db, services, channel, checkout, connect):
        result = checkout()
        key = result.license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)
        services.registry.disconnect(key, MACHINE_B)

        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]

        assert delivery_for(db, event_id, MACHINE_A).status == DeliveryStatus.AWAITING_ACK
        offline = delivery_for(db, event_id, MACHINE_B)
        assert offline.status == DeliveryStatus.PENDING
        assert offline.last_error == "Terminal is disconnected"
        assert event_id not in [e["event_id"] for e in channel.pushed_to(MACHINE_B)]

    def test_late_ack_resolves_dead_letter(self, db, clock, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A, open_stream=False)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]
        for _ in range(4):
            clock.advance(seconds=300)
            services.coordinator.process_due()

        ack = services.coordinator.acknowledge(event_id, MACHINE_A, AckStatus.SUCCESS)

        assert ack.delivery_status == DeliveryStatus.DELIVERED
        entry = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.event_id == event_id))
        assert entry.status == DeadLetterStatus.RESOLVED
        assert entry.resolved_by == "system"


class TestInvalidPayload:
    def test_invalid_stored_payload_goes_straight_to_dead_letter(self, db, clock, services, channel, license_key, connect):
        connect(license_key, MACHINE_A)
        event = SubscriptionEvent(
            event_id="evt_broken",
            event_type="license_revoked",
            license_key=license_key,
            payload={"should_disable": True},
            created_at=clock.now,
            expires_at=clock.now + timedelta(hours=24),
        )
        db.add(event)
        db.flush()
        enqueue_deliveries(db, event, [MACHINE_A], clock.now)
        db.commit()

        services.coordinator.dispatch_event("evt_broken")

        delivery = delivery_for(db, "evt_broken", MACHINE_A)
        assert delivery.status == DeliveryStatus.DEAD_LETTERED
        assert delivery.retry_count == 0
        entry = db.scalar(select(DeadLetterEntry).where(DeadLetterEntry.event_id == "evt_broken"))
        assert entry.failure_classification == FailureClassification.INVALID_PAYLOAD
        (record,) = retries_for(db, "evt_broken", MACHINE_A)
        assert record.result == RetryResult.INVALID
        assert channel.pushed_to(MACHINE_A) == []
