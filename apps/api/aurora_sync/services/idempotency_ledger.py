"""
Idempotency ledger for billing provider webhooks.

A webhook is applied at most once: the first delivery inserts a row keyed by
the external event id, every later delivery hits the unique constraint and is
reported as already processed. The insert runs inside the caller's
transaction, so a transition that rolls back also rolls back its ledger row
and the provider's redelivery is processed again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.logging import get_logger
from ..models.webhook_event import WebhookEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    is_new: bool
    record: WebhookEvent | None = None


class IdempotencyLedger:
    """Insert-or-detect on ``webhook_events.external_event_id``."""

    @classmethod
    def record_if_new(cls, db: Session, external_event_id: str, event_type: str) -> LedgerResult:
        """
        Record an inbound event id unless it was seen before.

        Args:
            db: Database session (transaction owned by the caller)
            external_event_id: Billing provider event id
            event_type: Billing provider event type

        Returns:
            LedgerResult with ``is_new=False`` for duplicates
        """
        record = WebhookEvent(
            external_event_id=external_event_id,
            event_type=event_type,
            processed=False,
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError:
            logger.info(
                "webhook_event_duplicate",
                external_event_id=external_event_id,
                event_type=event_type,
            )
            return LedgerResult(is_new=False)

        return LedgerResult(is_new=True, record=record)

    @classmethod
    def mark_processed(cls, db: Session, record: WebhookEvent, now: datetime) -> None:
        record.processed = True
        record.processed_at = now

    @classmethod
    def is_processed(cls, db: Session, external_event_id: str) -> bool:
        return db.scalar(
            select(WebhookEvent.processed).where(WebhookEvent.external_event_id == external_event_id)
        ) is True

    @classmethod
    def purge_older_than(cls, db: Session, days: int | None = None, clock: Clock = utc_now) -> int:
        """
        Delete processed ledger rows older than the retention window.

        Billing providers stop redelivering after a few days, so rows past the
        window can no longer deduplicate anything.
        """
        days = days if days is not None else settings.idempotency_retention_days
        cutoff = clock() - timedelta(days=days)

        result = db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.processed.is_(True),
                WebhookEvent.created_at < cutoff,
            )
        )
        db.commit()

        if result.rowcount:
            logger.info("idempotency_records_purged", deleted_count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount
