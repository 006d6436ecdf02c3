"""
Outbound event envelopes pushed to desktop terminals.

Each event type has its own payload model and envelope variant; the envelope
union is discriminated on ``event_type``. Payloads are validated on append and
again before every push, so a structurally invalid stored event is detected
instead of being retried.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..core.exceptions import InvalidEventPayloadError
from ..models.enums import EventType


class EventPayload(BaseModel):
    """Common base for event payloads."""


class SubscriptionUpdatedPayload(EventPayload):
    subscription_id: Optional[int] = None
    status: str
    previous_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    should_disable: bool = False
    grace_period_end: Optional[datetime] = None


class SubscriptionCancelledPayload(EventPayload):
    subscription_id: Optional[int] = None
    reason: Optional[str] = None
    cancel_immediately: bool
    cancelled_at: datetime
    effective_at: Optional[datetime] = Field(None, description="When the license stops working")
    grace_period_end: Optional[datetime] = None


class SubscriptionPastDuePayload(EventPayload):
    subscription_id: Optional[int] = None
    past_due_since: datetime
    grace_period_end: datetime
    should_disable: bool = False


class SubscriptionReactivatedPayload(EventPayload):
    subscription_id: Optional[int] = None
    status: str
    reactivated_at: datetime


class PlanChangedPayload(EventPayload):
    subscription_id: Optional[int] = None
    previous_plan: str
    new_plan: str
    previous_billing_cycle: str
    new_billing_cycle: str
    max_terminals: int
    license_reissued: bool
    new_license_key: Optional[str] = Field(None, description="Set only when the key was reissued")
    effective_at: datetime


class LicenseRevokedPayload(EventPayload):
    reason: str
    revoked_at: datetime
    should_disable: bool = True
    grace_period_end: Optional[datetime] = Field(None, description="Offline grace on the terminal")


class LicenseReactivatedPayload(EventPayload):
    reason: str
    reactivated_at: datetime
    max_terminals: int


class PaymentSucceededPayload(EventPayload):
    subscription_id: Optional[int] = None
    amount_paid: Optional[float] = None
    currency: Optional[str] = None
    paid_at: datetime
    current_period_end: Optional[datetime] = None


class TerminalAddedPayload(EventPayload):
    machine_id_hash: str
    terminal_name: Optional[str] = None
    is_primary: bool
    connected_at: datetime


class TerminalRemovedPayload(EventPayload):
    machine_id_hash: str
    reason: str
    disconnected_at: datetime


class TerminalReconnectedPayload(EventPayload):
    machine_id_hash: str
    terminal_name: Optional[str] = None
    is_primary: bool
    reconnected_at: datetime


class PrimaryChangedPayload(EventPayload):
    previous_primary: Optional[str] = None
    new_primary: Optional[str] = None
    reason: str
    changed_at: datetime


class DeactivationBroadcastPayload(EventPayload):
    reason: str
    deactivated_at: datetime
    machine_id_hashes: List[str] = Field(default_factory=list)


class StateSyncPayload(EventPayload):
    sync_id: str
    sync_type: str
    source_machine_id_hash: Optional[str] = None
    targets: Optional[List[str]] = Field(None, description="Null means every terminal")
    data: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: Dict[EventType, type[EventPayload]] = {
    EventType.SUBSCRIPTION_UPDATED: SubscriptionUpdatedPayload,
    EventType.SUBSCRIPTION_CANCELLED: SubscriptionCancelledPayload,
    EventType.SUBSCRIPTION_PAST_DUE: SubscriptionPastDuePayload,
    EventType.SUBSCRIPTION_REACTIVATED: SubscriptionReactivatedPayload,
    EventType.PLAN_CHANGED: PlanChangedPayload,
    EventType.LICENSE_REVOKED: LicenseRevokedPayload,
    EventType.LICENSE_REACTIVATED: LicenseReactivatedPayload,
    EventType.PAYMENT_SUCCEEDED: PaymentSucceededPayload,
    EventType.TERMINAL_ADDED: TerminalAddedPayload,
    EventType.TERMINAL_REMOVED: TerminalRemovedPayload,
    EventType.TERMINAL_RECONNECTED: TerminalReconnectedPayload,
    EventType.PRIMARY_CHANGED: PrimaryChangedPayload,
    EventType.DEACTIVATION_BROADCAST: DeactivationBroadcastPayload,
    EventType.STATE_SYNC: StateSyncPayload,
}


class _Envelope(BaseModel):
    event_id: str
    created_at: datetime


class SubscriptionUpdatedEnvelope(_Envelope):
    event_type: Literal["subscription_updated"]
    payload: SubscriptionUpdatedPayload


class SubscriptionCancelledEnvelope(_Envelope):
    event_type: Literal["subscription_cancelled"]
    payload: SubscriptionCancelledPayload


class SubscriptionPastDueEnvelope(_Envelope):
    event_type: Literal["subscription_past_due"]
    payload: SubscriptionPastDuePayload


class SubscriptionReactivatedEnvelope(_Envelope):
    event_type: Literal["subscription_reactivated"]
    payload: SubscriptionReactivatedPayload


class PlanChangedEnvelope(_Envelope):
    event_type: Literal["plan_changed"]
    payload: PlanChangedPayload


class LicenseRevokedEnvelope(_Envelope):
    event_type: Literal["license_revoked"]
    payload: LicenseRevokedPayload


class LicenseReactivatedEnvelope(_Envelope):
    event_type: Literal["license_reactivated"]
    payload: LicenseReactivatedPayload


class PaymentSucceededEnvelope(_Envelope):
    event_type: Literal["payment_succeeded"]
    payload: PaymentSucceededPayload


class TerminalAddedEnvelope(_Envelope):
    event_type: Literal["terminal_added"]
    payload: TerminalAddedPayload


class TerminalRemovedEnvelope(_Envelope):
    event_type: Literal["terminal_removed"]
    payload: TerminalRemovedPayload


class TerminalReconnectedEnvelope(_Envelope):
    event_type: Literal["terminal_reconnected"]
    payload: TerminalReconnectedPayload


class PrimaryChangedEnvelope(_Envelope):
    event_type: Literal["primary_changed"]
    payload: PrimaryChangedPayload


class DeactivationBroadcastEnvelope(_Envelope):
    event_type: Literal["deactivation_broadcast"]
    payload: DeactivationBroadcastPayload


class StateSyncEnvelope(_Envelope):
    event_type: Literal["state_sync"]
    payload: StateSyncPayload


EventEnvelope = Annotated[
    Union[
        SubscriptionUpdatedEnvelope,
        SubscriptionCancelledEnvelope,
        SubscriptionPastDueEnvelope,
        SubscriptionReactivatedEnvelope,
        PlanChangedEnvelope,
        LicenseRevokedEnvelope,
        LicenseReactivatedEnvelope,
        PaymentSucceededEnvelope,
        TerminalAddedEnvelope,
        TerminalRemovedEnvelope,
        TerminalReconnectedEnvelope,
        PrimaryChangedEnvelope,
        DeactivationBroadcastEnvelope,
        StateSyncEnvelope,
    ],
    Field(discriminator="event_type"),
]

envelope_adapter: TypeAdapter = TypeAdapter(EventEnvelope)


def _summarize(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in error.errors()
    ]


def normalize_payload(event_type: EventType | str, payload: EventPayload | Dict[str, Any]) -> Dict[str, Any]:
    """Validate a payload for ``event_type`` and return its JSON form.

    Raises:
        InvalidEventPayloadError: Unknown event type or payload shape mismatch
    """
    try:
        event_type = EventType(event_type)
    except ValueError as e:
        raise InvalidEventPayloadError(
            f"Unknown event type: {event_type}",
            details={"event_type": str(event_type)},
        ) from e

    model_cls = PAYLOAD_MODELS[event_type]
    if isinstance(payload, EventPayload) and not isinstance(payload, model_cls):
        raise InvalidEventPayloadError(
            f"{type(payload).__name__} is not a {event_type.value} payload",
            details={"event_type": event_type.value},
        )

    try:
        model = payload if isinstance(payload, model_cls) else model_cls.model_validate(payload)
    except ValidationError as e:
        raise InvalidEventPayloadError(
            f"Invalid {event_type.value} payload",
            details={"event_type": event_type.value, "errors": _summarize(e)},
        ) from e

    return model.model_dump(mode="json")


def validate_envelope(data: Dict[str, Any]) -> BaseModel:
    """Parse a stored or received envelope into its typed variant.

    Raises:
        InvalidEventPayloadError: The envelope does not match any variant
    """
    try:
        return envelope_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidEventPayloadError(
            "Invalid event envelope",
            details={
                "event_id": data.get("event_id"),
                "event_type": data.get("event_type"),
                "errors": _summarize(e),
            },
        ) from e
