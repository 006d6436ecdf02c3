"""
Append-only outbound event log and 24-hour replay buffer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.logging import get_logger
from ..metrics import events_published_total
from ..models.enums import EventType
from ..models.event_delivery import EventDelivery
from ..models.subscription_event import SubscriptionEvent
from ..schemas.events import EventPayload, normalize_payload

logger = get_logger(__name__)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


@dataclass
class ReplayResult:
    license_key: str
    since: datetime
    window_start: datetime
    replay_gap: bool
    events: List[SubscriptionEvent] = field(default_factory=list)

    def envelopes(self) -> List[Dict[str, Any]]:
        return [event.to_envelope() for event in self.events]


class EventLog:
    """Outbound events per license, retained for the replay window."""

    def __init__(self, db: Session, clock: Clock = utc_now, retention_hours: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.retention = timedelta(hours=retention_hours or settings.event_retention_hours)

    def append(
        self,
        license_key: str,
        event_type: EventType | str,
        payload: EventPayload | Dict[str, Any],
    ) -> str:
        """Append an event and return its id. Does not commit."""
        return self.record(license_key, event_type, payload).event_id

    def record(
        self,
        license_key: str,
        event_type: EventType | str,
        payload: EventPayload | Dict[str, Any],
    ) -> SubscriptionEvent:
        """Validate and append an event, returning the new row.

        Raises:
            InvalidEventPayloadError: payload does not match the event type
        """
        data = normalize_payload(event_type, payload)
        event_type = EventType(event_type)
        now = self.clock()

        event = SubscriptionEvent(
            event_id=new_event_id(),
            event_type=event_type.value,
            license_key=license_key,
            payload=data,
            created_at=now,
            expires_at=now + self.retention,
        )
        self.db.add(event)
        self.db.flush()

        events_published_total.labels(event_type=event_type.value).inc()
        logger.info(
            "subscription_event_appended",
            event_id=event.event_id,
            event_type=event_type.value,
            license_key=license_key,
        )
        return event

    def get(self, event_id: str) -> Optional[SubscriptionEvent]:
        return self.db.scalar(select(SubscriptionEvent).where(SubscriptionEvent.event_id == event_id))

    def replay_since(self, license_key: str, since: datetime) -> ReplayResult:
        """
        Events for a license created at or after ``since``, in creation order.

        The bound is inclusive; consumers deduplicate by event id. When
        ``since`` predates the retention window ``replay_gap`` is set and the
        terminal must re-validate its license instead of trusting the replay.
        """
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        now = self.clock()
        window_start = now - self.retention

        rows = self.db.scalars(
            select(SubscriptionEvent)
            .where(
                SubscriptionEvent.license_key == license_key,
                SubscriptionEvent.created_at >= since,
                SubscriptionEvent.expires_at > now,
            )
            .order_by(SubscriptionEvent.created_at, SubscriptionEvent.id)
        ).all()

        result = ReplayResult(
            license_key=license_key,
            since=since,
            window_start=window_start,
            replay_gap=since < window_start,
            events=list(rows),
        )
        logger.info(
            "event_replay_served",
            license_key=license_key,
            since=since.isoformat(),
            event_count=len(result.events),
            replay_gap=result.replay_gap,
        )
        return result

    def purge_expired(self) -> int:
        """Delete events past their expiry together with their delivery rows."""
        now = self.clock()
        expired_ids = select(SubscriptionEvent.event_id).where(SubscriptionEvent.expires_at <= now)

        self.db.execute(
            delete(EventDelivery).where(EventDelivery.event_id.in_(expired_ids)),
            execution_options={"synchronize_session": False},
        )
        result = self.db.execute(
            delete(SubscriptionEvent).where(SubscriptionEvent.expires_at <= now),
            execution_options={"synchronize_session": False},
        )
        self.db.commit()

        if result.rowcount:
            logger.info("expired_events_purged", deleted_count=result.rowcount)
        return result.rowcount
