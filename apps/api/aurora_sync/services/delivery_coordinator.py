"""
Delivery coordinator: at-least-once push of outbound events to terminals.

Each (event, terminal) pair is an ``event_deliveries`` row that moves through

    pending --push--> awaiting_ack --ack--> delivered
       ^                   |
       +---- failure ------+------ budget exhausted --> dead_lettered

``next_attempt_at`` is the next push time of a pending row and the ack
deadline of an awaiting row. Nothing sleeps: ``process_due`` is driven by a
periodic sweep and an injectable clock. Every attempt leaves exactly one
``event_retry_history`` row once its outcome is known.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.exceptions import ChannelUnavailableError, ErrorCode, InvalidEventPayloadError, NotFoundError
from ..core.logging import get_logger
from ..core.push_channel import PushChannel
from ..core.retry_config import RetryPolicy
from ..metrics import ack_processing_ms, acknowledgments_total, delivery_attempts_total
from ..models.dead_letter import DeadLetterEntry
from ..models.enums import AckStatus, ConnectionStatus, DeliveryStatus, FailureClassification, RetryResult
from ..models.event_acknowledgment import EventAcknowledgment
from ..models.event_delivery import EventDelivery
from ..models.event_retry import EventRetryRecord
from ..models.subscription_event import SubscriptionEvent
from ..models.terminal_coordination_event import TerminalCoordinationEvent
from ..models.terminal_session import TerminalSession
from ..schemas.events import validate_envelope
from .dead_letter_service import DeadLetterService

logger = get_logger(__name__)


@dataclass
class AckResult:
    acknowledgment: EventAcknowledgment
    duplicate: bool
    delivery_status: Optional[DeliveryStatus] = None


@dataclass
class SweepResult:
    attempted: int = 0
    timed_out: int = 0
    dead_lettered: int = 0


def enqueue_deliveries(
    db: Session,
    event: SubscriptionEvent,
    targets: Iterable[str],
    now: datetime,
) -> List[EventDelivery]:
    """Create pending delivery rows for new targets. Does not commit."""
    existing = set(
        db.scalars(
            select(EventDelivery.machine_id_hash).where(EventDelivery.event_id == event.event_id)
        ).all()
    )

    deliveries = []
    for machine_id_hash in dict.fromkeys(targets):
        if machine_id_hash in existing:
            continue
        delivery = EventDelivery(
            event_id=event.event_id,
            license_key=event.license_key,
            machine_id_hash=machine_id_hash,
            status=DeliveryStatus.PENDING,
            retry_count=0,
            next_attempt_at=now,
        )
        db.add(delivery)
        deliveries.append(delivery)

    db.flush()
    return deliveries


class DeliveryCoordinator:
    """Push, retry and dead-letter outbound events per terminal."""

    def __init__(
        self,
        db: Session,
        channel: PushChannel,
        policy: Optional[RetryPolicy] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.channel = channel
        self.policy = policy or RetryPolicy.from_settings()
        self.clock = clock
        self.dead_letters = DeadLetterService(db, clock=clock)

    def enqueue(self, event: SubscriptionEvent, targets: Iterable[str]) -> List[EventDelivery]:
        return enqueue_deliveries(self.db, event, targets, self.clock())

    def deliver(self, event: SubscriptionEvent, targets: Iterable[str]) -> List[EventDelivery]:
        """Enqueue deliveries for ``targets`` and attempt each one now."""
        deliveries = self.enqueue(event, targets)
        now = self.clock()
        for delivery in deliveries:
            self._attempt(delivery, now)
        self.db.commit()
        return deliveries

    def dispatch_event(self, event_id: str) -> int:
        """Attempt every due pending delivery of one event."""
        now = self.clock()
        deliveries = self.db.scalars(
            select(EventDelivery)
            .where(
                EventDelivery.event_id == event_id,
                EventDelivery.status == DeliveryStatus.PENDING,
                EventDelivery.next_attempt_at <= now,
            )
            .order_by(EventDelivery.id)
            .with_for_update(skip_locked=True, of=EventDelivery)
        ).all()

        for delivery in deliveries:
            self._attempt(delivery, now)
        self.db.commit()
        return len(deliveries)

    def process_due(self, limit: Optional[int] = None) -> SweepResult:
        """
        Handle every delivery whose ``next_attempt_at`` has passed.

        Pending rows are pushed; awaiting rows whose ack deadline passed are
        recorded as timed out and rescheduled or dead-lettered. Rows locked by
        a concurrent sweep are skipped.
        """
        now = self.clock()
        deliveries = self.db.scalars(
            select(EventDelivery)
            .where(
                EventDelivery.status.in_((DeliveryStatus.PENDING, DeliveryStatus.AWAITING_ACK)),
                EventDelivery.next_attempt_at <= now,
            )
            .order_by(EventDelivery.next_attempt_at, EventDelivery.id)
            .limit(limit or settings.delivery_sweep_batch_size)
            .with_for_update(skip_locked=True, of=EventDelivery)
        ).all()

        result = SweepResult()
        for delivery in deliveries:
            if delivery.status == DeliveryStatus.AWAITING_ACK:
                self._record_failure(
                    delivery,
                    RetryResult.TIMEOUT,
                    f"No acknowledgment within {self.policy.ack_timeout:g}s",
                    now,
                )
                result.timed_out += 1
            else:
                self._attempt(delivery, now)
                result.attempted += 1
            if delivery.status == DeliveryStatus.DEAD_LETTERED:
                result.dead_lettered += 1

        self.db.commit()

        if deliveries:
            logger.info(
                "delivery_sweep_completed",
                attempted=result.attempted,
                timed_out=result.timed_out,
                dead_lettered=result.dead_lettered,
            )
        return result

    def acknowledge(
        self,
        event_id: str,
        machine_id_hash: str,
        status: AckStatus | str,
        error_message: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> AckResult:
        """
        Record a terminal's acknowledgment. Idempotent per (event, terminal).

        A repeated ack returns the stored row with ``duplicate=True``. A
        success or skip following a stored failure replaces it, since the
        terminal processed the event on a later attempt.

        Raises:
            NotFoundError: Neither the event nor a delivery for it is known
        """
        status = AckStatus(status)
        now = self.clock()

        delivery = self._find_delivery(event_id, machine_id_hash)
        license_key = delivery.license_key if delivery else self._license_key_for(event_id)

        ack = self._find_ack(event_id, machine_id_hash)
        applied = False
        if ack is None:
            ack, applied = self._insert_ack(
                event_id, machine_id_hash, license_key, status, error_message, processing_time_ms, now
            )
        if not applied and ack.status == AckStatus.FAILED and status != AckStatus.FAILED:
            ack.status = status
            ack.error_message = error_message
            ack.processing_time_ms = processing_time_ms
            ack.acknowledged_at = now
            applied = True

        if applied:
            if delivery is not None:
                self._apply_ack(delivery, status, error_message, now)
            self._update_coordination_status(
                event_id,
                machine_id_hash,
                "failed" if status == AckStatus.FAILED else "acknowledged",
            )
            if processing_time_ms is not None:
                ack_processing_ms.observe(processing_time_ms)

        self.db.commit()

        duplicate = not applied
        acknowledgments_total.labels(status=status.value, duplicate=str(duplicate).lower()).inc()
        logger.info(
            "event_acknowledged",
            event_id=event_id,
            machine_id_hash=machine_id_hash,
            ack_status=status.value,
            duplicate=duplicate,
            processing_time_ms=processing_time_ms,
        )
        return AckResult(
            acknowledgment=ack,
            duplicate=duplicate,
            delivery_status=delivery.status if delivery else None,
        )

    def _attempt(self, delivery: EventDelivery, now: datetime) -> None:
        event = delivery.event
        delivery.last_attempt_at = now

        try:
            validate_envelope(event.to_envelope())
        except InvalidEventPayloadError as e:
            self._dead_letter_invalid(delivery, e, now)
            return

        if not self._is_reachable(delivery):
            self._record_failure(delivery, RetryResult.OFFLINE, "Terminal is disconnected", now)
            return

        try:
            pushed = self.channel.push(delivery.license_key, delivery.machine_id_hash, event.to_envelope())
        except ChannelUnavailableError as e:
            self._record_failure(delivery, RetryResult.FAILED, e.message, now)
            return

        if not pushed:
            self._record_failure(delivery, RetryResult.OFFLINE, "No live stream for terminal", now)
            return

        delivery.status = DeliveryStatus.AWAITING_ACK
        delivery.next_attempt_at = now + timedelta(seconds=self.policy.ack_timeout)
        delivery_attempts_total.labels(result="pushed").inc()
        logger.debug(
            "event_pushed",
            event_id=delivery.event_id,
            machine_id_hash=delivery.machine_id_hash,
            attempt_number=delivery.retry_count + 1,
        )

    def _record_failure(self, delivery: EventDelivery, result: RetryResult, error: str, now: datetime) -> None:
        delivery.retry_count += 1
        delivery.last_error = error
        attempt = delivery.retry_count
        delivery_attempts_total.labels(result=result.value).inc()

        if self.policy.is_exhausted(attempt):
            self._append_retry(delivery, attempt, result, error, now)
            self.db.flush()
            self.dead_letters.move_to_dead_letter(
                delivery,
                self._retry_history(delivery),
                FailureClassification.RETRIES_EXHAUSTED,
                error=error,
            )
            self._update_coordination_status(delivery.event_id, delivery.machine_id_hash, "failed")
            return

        delay = self.policy.delay_for(attempt)
        delivery.status = DeliveryStatus.PENDING
        delivery.next_attempt_at = now + delay
        self._append_retry(delivery, attempt, result, error, now, next_retry_at=delivery.next_attempt_at, delay=delay)

        logger.warning(
            "event_delivery_failed",
            event_id=delivery.event_id,
            machine_id_hash=delivery.machine_id_hash,
            attempt_number=attempt,
            result=result.value,
            error=error,
            next_attempt_at=delivery.next_attempt_at.isoformat(),
        )

    def _dead_letter_invalid(self, delivery: EventDelivery, error: InvalidEventPayloadError, now: datetime) -> None:
        delivery.last_error = error.message
        delivery_attempts_total.labels(result=RetryResult.INVALID.value).inc()
        self._append_retry(delivery, delivery.retry_count + 1, RetryResult.INVALID, error.message, now)
        self.db.flush()
        self.dead_letters.move_to_dead_letter(
            delivery,
            self._retry_history(delivery),
            FailureClassification.INVALID_PAYLOAD,
            error=error.message,
        )
        self._update_coordination_status(delivery.event_id, delivery.machine_id_hash, "failed")

    def _apply_ack(self, delivery: EventDelivery, status: AckStatus, error_message: Optional[str], now: datetime) -> None:
        if status == AckStatus.FAILED:
            if delivery.status == DeliveryStatus.AWAITING_ACK:
                self._record_failure(delivery, RetryResult.FAILED, error_message or "Terminal reported failure", now)
            return

        if delivery.status == DeliveryStatus.DELIVERED:
            return
        if delivery.status == DeliveryStatus.AWAITING_ACK:
            self._append_retry(delivery, delivery.retry_count + 1, RetryResult.ACKNOWLEDGED, None, now)

        delivery.status = DeliveryStatus.DELIVERED
        delivery.delivered_at = now
        delivery.next_attempt_at = None

        # Covers both late acks and acks after a requeue
        self.dead_letters.resolve_late_delivery(delivery)

    def _append_retry(
        self,
        delivery: EventDelivery,
        attempt: int,
        result: RetryResult,
        error: Optional[str],
        now: datetime,
        next_retry_at: Optional[datetime] = None,
        delay: Optional[timedelta] = None,
    ) -> EventRetryRecord:
        record = EventRetryRecord(
            event_id=delivery.event_id,
            license_key=delivery.license_key,
            machine_id_hash=delivery.machine_id_hash,
            attempt_number=attempt,
            result=result,
            error_message=error,
            next_retry_at=next_retry_at,
            backoff_delay_ms=int(delay.total_seconds() * 1000) if delay is not None else None,
            attempted_at=now,
        )
        self.db.add(record)
        return record

    def _retry_history(self, delivery: EventDelivery) -> List[EventRetryRecord]:
        return list(
            self.db.scalars(
                select(EventRetryRecord)
                .where(
                    EventRetryRecord.event_id == delivery.event_id,
                    EventRetryRecord.machine_id_hash == delivery.machine_id_hash,
                )
                .order_by(EventRetryRecord.id)
            ).all()
        )

    def _is_reachable(self, delivery: EventDelivery) -> bool:
        connection_status = self.db.scalar(
            select(TerminalSession.connection_status).where(
                TerminalSession.license_key == delivery.license_key,
                TerminalSession.machine_id_hash == delivery.machine_id_hash,
            )
        )
        # Deactivated terminals still receive the revocation itself
        return connection_status is not None and connection_status != ConnectionStatus.DISCONNECTED

    def _find_delivery(self, event_id: str, machine_id_hash: str) -> Optional[EventDelivery]:
        return self.db.scalar(
            select(EventDelivery).where(
                EventDelivery.event_id == event_id,
                EventDelivery.machine_id_hash == machine_id_hash,
            )
        )

    def _find_ack(self, event_id: str, machine_id_hash: str) -> Optional[EventAcknowledgment]:
        return self.db.scalar(
            select(EventAcknowledgment).where(
                EventAcknowledgment.event_id == event_id,
                EventAcknowledgment.machine_id_hash == machine_id_hash,
            )
        )

    def _license_key_for(self, event_id: str) -> str:
        license_key = self.db.scalar(
            select(SubscriptionEvent.license_key).where(SubscriptionEvent.event_id == event_id)
        )
        if license_key is None:
            license_key = self.db.scalar(
                select(DeadLetterEntry.license_key).where(DeadLetterEntry.event_id == event_id).limit(1)
            )
        if license_key is None:
            raise NotFoundError(
                f"Event {event_id} not found",
                error_code=ErrorCode.EVENT_NOT_FOUND,
                details={"event_id": event_id},
            )
        return license_key

    def _insert_ack(
        self,
        event_id: str,
        machine_id_hash: str,
        license_key: str,
        status: AckStatus,
        error_message: Optional[str],
        processing_time_ms: Optional[int],
        now: datetime,
    ) -> tuple[EventAcknowledgment, bool]:
        ack = EventAcknowledgment(
            event_id=event_id,
            machine_id_hash=machine_id_hash,
            license_key=license_key,
            status=status,
            error_message=error_message,
            processing_time_ms=processing_time_ms,
            acknowledged_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(ack)
                self.db.flush()
        except IntegrityError:
            # Concurrent ack for the same pair won the insert
            return self._find_ack(event_id, machine_id_hash), False
        return ack, True

    def _update_coordination_status(self, event_id: str, machine_id_hash: str, state: str) -> None:
        records = self.db.scalars(
            select(TerminalCoordinationEvent).where(TerminalCoordinationEvent.event_id == event_id)
        ).all()
        for record in records:
            if machine_id_hash not in record.delivery_status:
                continue
            record.delivery_status = {**record.delivery_status, machine_id_hash: state}
