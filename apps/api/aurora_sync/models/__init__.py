"""
Models package. Importing it registers every table on ``metadata``.
"""

from .base import Base, TimestampMixin, metadata
from .analytics import FailurePattern, LicenseHealthMetric, PerformanceMetric
from .dead_letter import DeadLetterEntry
from .event_acknowledgment import EventAcknowledgment
from .event_delivery import EventDelivery
from .event_retry import EventRetryRecord
from .license import License
from .subscription import Subscription
from .subscription_change import SubscriptionChange
from .subscription_event import SubscriptionEvent
from .terminal_coordination_event import TerminalCoordinationEvent
from .terminal_session import TerminalSession
from .terminal_state_sync import TerminalStateSync
from .webhook_event import WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "metadata",
    "DeadLetterEntry",
    "EventAcknowledgment",
    "EventDelivery",
    "EventRetryRecord",
    "FailurePattern",
    "License",
    "LicenseHealthMetric",
    "PerformanceMetric",
    "Subscription",
    "SubscriptionChange",
    "SubscriptionEvent",
    "TerminalCoordinationEvent",
    "TerminalSession",
    "TerminalStateSync",
    "WebhookEvent",
]
