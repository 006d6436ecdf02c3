"""
Transactional outbox for outbound events.

``publish`` appends the event and its per-terminal delivery rows inside the
caller's transaction. Nothing is pushed until the caller has committed and
calls ``dispatch_pending``; the periodic delivery sweep picks up anything a
crashed dispatcher left behind.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from ..core.clock import Clock, utc_now
from ..core.logging import get_logger
from ..models.enums import EventType
from ..models.subscription_event import SubscriptionEvent
from ..schemas.events import EventPayload
from .delivery_coordinator import DeliveryCoordinator, enqueue_deliveries
from .event_log import EventLog
from .terminal_session_service import resolve_targets

logger = get_logger(__name__)


class EventDispatcher(Protocol):
    def dispatch(self, event_ids: Sequence[str]) -> None:
        ...


class InlineEventDispatcher:
    """Attempts delivery in-process right after commit."""

    def __init__(self, coordinator_factory: Callable[[], DeliveryCoordinator]):
        self.coordinator_factory = coordinator_factory

    def dispatch(self, event_ids: Sequence[str]) -> None:
        coordinator = self.coordinator_factory()
        for event_id in event_ids:
            coordinator.dispatch_event(event_id)


class EventPublisher:
    """Append events and enqueue their deliveries in one transaction."""

    def __init__(
        self,
        db: Session,
        clock: Clock = utc_now,
        dispatcher: Optional[EventDispatcher] = None,
        retention_hours: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.dispatcher = dispatcher
        self.log = EventLog(db, clock=clock, retention_hours=retention_hours)
        self._pending: List[str] = []

    @property
    def pending_event_ids(self) -> List[str]:
        return list(self._pending)

    def publish(
        self,
        license_key: str,
        event_type: EventType | str,
        payload: EventPayload | Dict[str, Any],
        targets: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> SubscriptionEvent:
        """
        Append an event and enqueue one delivery per target. Does not commit.

        Args:
            license_key: License whose terminals receive the event
            event_type: Outbound event type
            payload: Payload model or dict, validated against the event type
            targets: Explicit machine id hashes; defaults to every
                non-deactivated session of the license
            exclude: Machine id hashes removed from the target set
        """
        event = self.log.record(license_key, event_type, payload)

        target_list = list(targets) if targets is not None else resolve_targets(self.db, license_key)
        if exclude:
            excluded = set(exclude)
            target_list = [target for target in target_list if target not in excluded]

        enqueue_deliveries(self.db, event, target_list, self.clock())
        self._pending.append(event.event_id)

        logger.debug(
            "event_deliveries_enqueued",
            event_id=event.event_id,
            event_type=event.event_type,
            target_count=len(target_list),
        )
        return event

    def dispatch_pending(self) -> List[str]:
        """Hand committed events to the dispatcher. Call only after commit."""
        event_ids, self._pending = self._pending, []
        if event_ids and self.dispatcher is not None:
            self.dispatcher.dispatch(event_ids)
        return event_ids

    def discard_pending(self) -> None:
        """Forget events of a rolled-back transaction."""
        self._pending = []
