"""
Wiring of the per-session service graph.

One ``Services`` bundle is built per database session, by the API request
dependency and by every background task.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.push_channel import PushChannel, build_push_channel
from .billing_webhook_service import BillingWebhookService
from .dead_letter_service import DeadLetterService
from .delivery_coordinator import DeliveryCoordinator
from .event_publisher import EventDispatcher, EventPublisher, InlineEventDispatcher
from .failure_pattern_service import FailurePatternService
from .license_health_service import LicenseHealthService
from .license_state_service import LicenseStateService
from .plan_catalog import PlanCatalog
from .terminal_coordination_service import TerminalCoordinationService
from .terminal_session_service import TerminalSessionRegistry


@lru_cache
def get_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings(settings)


@lru_cache
def get_push_channel() -> PushChannel:
    return build_push_channel()


@dataclass
class Services:
    db: Session
    catalog: PlanCatalog
    publisher: EventPublisher
    coordinator: DeliveryCoordinator
    dead_letters: DeadLetterService
    registry: TerminalSessionRegistry
    state: LicenseStateService
    coordination: TerminalCoordinationService
    webhooks: BillingWebhookService
    patterns: FailurePatternService
    health: LicenseHealthService


def build_services(
    db: Session,
    channel: Optional[PushChannel] = None,
    dispatcher: Optional[EventDispatcher] = None,
    clock: Clock = utc_now,
    catalog: Optional[PlanCatalog] = None,
) -> Services:
    """
    Build the service graph for one session.

    Without a dispatcher, committed events are delivered in-process by the
    same coordinator.
    """
    catalog = catalog or get_catalog()
    coordinator = DeliveryCoordinator(db, channel or get_push_channel(), clock=clock)
    if dispatcher is None:
        dispatcher = InlineEventDispatcher(lambda: coordinator)

    publisher = EventPublisher(db, clock=clock, dispatcher=dispatcher)
    registry = TerminalSessionRegistry(db, publisher, clock=clock)
    state = LicenseStateService(db, catalog, publisher, registry, clock=clock)
    patterns = FailurePatternService(db, clock=clock)

    return Services(
        db=db,
        catalog=catalog,
        publisher=publisher,
        coordinator=coordinator,
        dead_letters=DeadLetterService(db, clock=clock, coordinator=coordinator),
        registry=registry,
        state=state,
        coordination=TerminalCoordinationService(db, publisher, clock=clock),
        webhooks=BillingWebhookService(db, state, catalog, clock=clock),
        patterns=patterns,
        health=LicenseHealthService(db, patterns=patterns, clock=clock),
    )
