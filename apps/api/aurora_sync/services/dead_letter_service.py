"""
Dead-letter handler for deliveries that exhausted their retry budget or
carried a payload that can never be delivered.

Entries are keyed by (event, terminal). They start in ``pending_review`` and
end ``resolved`` or ``abandoned``; ``requeue`` puts the delivery back in the
coordinator's queue with a fresh attempt counter.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.exceptions import AuroraSyncError, ErrorCode, NotFoundError
from ..core.logging import get_logger
from ..metrics import dead_letters_total
from ..models.dead_letter import DeadLetterEntry
from ..models.enums import DeadLetterStatus, DeliveryStatus, FailureClassification
from ..models.event_delivery import EventDelivery
from ..models.event_retry import EventRetryRecord
from ..models.subscription_event import SubscriptionEvent

if TYPE_CHECKING:
    from .delivery_coordinator import DeliveryCoordinator

logger = get_logger(__name__)

SYSTEM_RESOLVER = "system"


class DeadLetterService:
    """Operator-facing dead-letter queue."""

    def __init__(
        self,
        db: Session,
        clock: Clock = utc_now,
        coordinator: Optional[DeliveryCoordinator] = None,
    ):
        self.db = db
        self.clock = clock
        self.coordinator = coordinator

    def move_to_dead_letter(
        self,
        delivery: EventDelivery,
        retry_history: Sequence[EventRetryRecord],
        classification: FailureClassification,
        error: Optional[str] = None,
    ) -> DeadLetterEntry:
        """
        Park a delivery in the dead-letter queue. Does not commit.

        A delivery that was requeued and failed again reopens its existing
        entry instead of creating a second one.
        """
        now = self.clock()
        event = delivery.event
        history = [
            {
                "attempt_number": record.attempt_number,
                "result": record.result.value,
                "error": record.error_message,
                "attempted_at": record.attempted_at.isoformat(),
            }
            for record in retry_history
        ]

        entry = self.db.scalar(
            select(DeadLetterEntry).where(
                DeadLetterEntry.event_id == delivery.event_id,
                DeadLetterEntry.machine_id_hash == delivery.machine_id_hash,
            )
        )
        if entry is None:
            entry = DeadLetterEntry(
                event_id=delivery.event_id,
                event_type=event.event_type,
                license_key=delivery.license_key,
                machine_id_hash=delivery.machine_id_hash,
                payload=dict(event.payload),
                first_failed_at=now,
            )
            self.db.add(entry)
        else:
            entry.resolved_by = None
            entry.resolution_notes = None
            entry.resolved_at = None

        entry.status = DeadLetterStatus.PENDING_REVIEW
        entry.failure_classification = classification
        entry.retry_count = delivery.retry_count
        entry.last_error = error or delivery.last_error
        entry.retry_history = history
        entry.last_failed_at = now

        delivery.status = DeliveryStatus.DEAD_LETTERED
        delivery.next_attempt_at = None
        self.db.flush()

        dead_letters_total.labels(classification=classification.value).inc()
        logger.error(
            "event_dead_lettered",
            event_id=delivery.event_id,
            event_type=event.event_type,
            license_key=delivery.license_key,
            machine_id_hash=delivery.machine_id_hash,
            classification=classification.value,
            retry_count=delivery.retry_count,
            error=entry.last_error,
        )
        return entry

    def get(self, entry_id: int) -> DeadLetterEntry:
        entry = self.db.get(DeadLetterEntry, entry_id)
        if entry is None:
            raise NotFoundError(
                f"Dead-letter entry {entry_id} not found",
                error_code=ErrorCode.DEAD_LETTER_NOT_FOUND,
                details={"entry_id": entry_id},
            )
        return entry

    def resolve(self, entry_id: int, notes: Optional[str], resolver_id: str) -> DeadLetterEntry:
        """Close an entry as delivered or no longer needed."""
        return self._close(entry_id, DeadLetterStatus.RESOLVED, notes, resolver_id)

    def abandon(self, entry_id: int, notes: Optional[str], resolver_id: str) -> DeadLetterEntry:
        """Close an entry that will never be delivered."""
        return self._close(entry_id, DeadLetterStatus.ABANDONED, notes, resolver_id)

    def requeue(self, entry_id: int) -> EventDelivery:
        """
        Re-inject a dead-lettered delivery with a reset attempt counter.

        The outbound event is recreated from the stored payload when it has
        already been garbage-collected; it then lives for
        ``dlq_requeue_retention_hours``.

        Raises:
            AuroraSyncError: The entry is closed, or its delivery is already being retried
        """
        entry = self.get(entry_id)
        self._ensure_open(entry)
        if entry.status == DeadLetterStatus.RETRYING:
            raise AuroraSyncError(
                f"Dead-letter entry {entry.id} is already being retried",
                error_code=ErrorCode.DEAD_LETTER_RETRYING,
                details={"entry_id": entry.id, "status": entry.status.value},
            )
        now = self.clock()

        event = self.db.scalar(select(SubscriptionEvent).where(SubscriptionEvent.event_id == entry.event_id))
        if event is None:
            event = SubscriptionEvent(
                event_id=entry.event_id,
                event_type=entry.event_type,
                license_key=entry.license_key,
                payload=dict(entry.payload),
                created_at=now,
                expires_at=now + timedelta(hours=settings.dlq_requeue_retention_hours),
            )
            self.db.add(event)
            self.db.flush()
            logger.info("dead_letter_event_recreated", event_id=entry.event_id, entry_id=entry.id)

        delivery = self.db.scalar(
            select(EventDelivery).where(
                EventDelivery.event_id == entry.event_id,
                EventDelivery.machine_id_hash == entry.machine_id_hash,
            )
        )
        if delivery is None:
            delivery = EventDelivery(
                event_id=entry.event_id,
                license_key=entry.license_key,
                machine_id_hash=entry.machine_id_hash,
            )
            self.db.add(delivery)

        delivery.status = DeliveryStatus.PENDING
        delivery.retry_count = 0
        delivery.next_attempt_at = now
        delivery.last_error = None
        delivery.delivered_at = None

        entry.status = DeadLetterStatus.RETRYING
        self.db.commit()

        logger.info(
            "dead_letter_requeued",
            entry_id=entry.id,
            event_id=entry.event_id,
            machine_id_hash=entry.machine_id_hash,
        )

        if self.coordinator is not None:
            self.coordinator.dispatch_event(entry.event_id)
        return delivery

    def resolve_late_delivery(self, delivery: EventDelivery) -> Optional[DeadLetterEntry]:
        """Close the entry of a delivery acknowledged after dead-lettering. Does not commit."""
        entry = self.db.scalar(
            select(DeadLetterEntry).where(
                DeadLetterEntry.event_id == delivery.event_id,
                DeadLetterEntry.machine_id_hash == delivery.machine_id_hash,
            )
        )
        if entry is None or entry.is_closed:
            return entry

        entry.status = DeadLetterStatus.RESOLVED
        entry.resolved_by = SYSTEM_RESOLVER
        entry.resolution_notes = "Acknowledged by terminal after dead-lettering"
        entry.resolved_at = self.clock()
        logger.info("dead_letter_auto_resolved", entry_id=entry.id, event_id=entry.event_id)
        return entry

    def list_entries(
        self,
        status: Optional[DeadLetterStatus] = None,
        license_key: Optional[str] = None,
        classification: Optional[FailureClassification] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DeadLetterEntry]:
        stmt = select(DeadLetterEntry)
        if status is not None:
            stmt = stmt.where(DeadLetterEntry.status == status)
        if license_key is not None:
            stmt = stmt.where(DeadLetterEntry.license_key == license_key)
        if classification is not None:
            stmt = stmt.where(DeadLetterEntry.failure_classification == classification)
        stmt = stmt.order_by(DeadLetterEntry.last_failed_at.desc(), DeadLetterEntry.id.desc())
        return list(self.db.scalars(stmt.limit(limit).offset(offset)).all())

    def stats(self) -> Dict[str, Any]:
        """Counts by status and classification plus the oldest open entry."""
        by_status = {
            status.value: count
            for status, count in self.db.execute(
                select(DeadLetterEntry.status, func.count()).group_by(DeadLetterEntry.status)
            ).all()
        }
        by_classification = {
            classification.value: count
            for classification, count in self.db.execute(
                select(DeadLetterEntry.failure_classification, func.count())
                .where(DeadLetterEntry.status == DeadLetterStatus.PENDING_REVIEW)
                .group_by(DeadLetterEntry.failure_classification)
            ).all()
        }
        oldest_pending = self.db.scalar(
            select(func.min(DeadLetterEntry.first_failed_at)).where(
                DeadLetterEntry.status == DeadLetterStatus.PENDING_REVIEW
            )
        )

        return {
            "total": sum(by_status.values()),
            "by_status": {status.value: by_status.get(status.value, 0) for status in DeadLetterStatus},
            "pending_by_classification": by_classification,
            "oldest_pending_at": oldest_pending.isoformat() if oldest_pending else None,
        }

    def purge_closed(self, older_than_days: Optional[int] = None) -> int:
        """Delete resolved and abandoned entries closed before the retention window."""
        days = older_than_days if older_than_days is not None else settings.dlq_retention_days
        cutoff = self.clock() - timedelta(days=days)

        result = self.db.execute(
            delete(DeadLetterEntry).where(
                DeadLetterEntry.status.in_((DeadLetterStatus.RESOLVED, DeadLetterStatus.ABANDONED)),
                DeadLetterEntry.resolved_at < cutoff,
            ),
            execution_options={"synchronize_session": False},
        )
        self.db.commit()

        if result.rowcount:
            logger.info("dead_letters_purged", deleted_count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount

    def _close(
        self,
        entry_id: int,
        status: DeadLetterStatus,
        notes: Optional[str],
        resolver_id: str,
    ) -> DeadLetterEntry:
        entry = self.get(entry_id)
        self._ensure_open(entry)

        entry.status = status
        entry.resolution_notes = notes
        entry.resolved_by = resolver_id
        entry.resolved_at = self.clock()
        self.db.commit()

        logger.info(
            "dead_letter_closed",
            entry_id=entry.id,
            event_id=entry.event_id,
            status=status.value,
            resolved_by=resolver_id,
        )
        return entry

    @staticmethod
    def _ensure_open(entry: DeadLetterEntry) -> None:
        if entry.is_closed:
            raise AuroraSyncError(
                f"Dead-letter entry {entry.id} is already {entry.status.value}",
                error_code=ErrorCode.DEAD_LETTER_CLOSED,
                details={"entry_id": entry.id, "status": entry.status.value},
            )
