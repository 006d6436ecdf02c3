"""
Billing provider webhook ingestion.

Each webhook is applied exactly once: the ledger insert, the license
transitions it triggers and the ledger's processed flag share one
transaction. A handler failure rolls all of it back, so the provider's
redelivery is processed from scratch.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.clock import Clock, utc_now
from ..core.exceptions import InvalidWebhookPayloadError, InvalidWebhookSignatureError
from ..core.logging import get_logger
from ..metrics import webhook_events_total, webhook_processing_seconds
from ..models.enums import BillingCycle, LicenseStatus, SubscriptionStatus
from ..models.subscription import Subscription
from .idempotency_ledger import IdempotencyLedger
from .license_state_service import LicenseStateService, TransitionResult
from .plan_catalog import PlanCatalog

logger = get_logger(__name__)

# Provider subscription status -> local status; missing entries are not mirrored
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}

# Recorded in the ledger, no license effect
LEDGER_ONLY_EVENTS = frozenset({
    "customer.updated",
    "payment_method.attached",
    "payment_method.detached",
})

_LIVE = (LicenseStatus.ACTIVE, LicenseStatus.TRIALING)


@dataclass
class WebhookOutcome:
    external_event_id: str
    event_type: str
    status: str  # processed | duplicate | ignored
    event_ids: List[str] = field(default_factory=list)


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Check a ``t=<unix>,v1=<hex>`` HMAC-SHA256 signature header.

    The signed message is ``"{t}.{payload}"``. Any ``v1`` entry may match.

    Raises:
        InvalidWebhookSignatureError: Missing, malformed, stale or wrong signature
    """
    if not signature_header:
        raise InvalidWebhookSignatureError("Missing signature header")

    timestamp: Optional[int] = None
    signatures: List[str] = []
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidWebhookSignatureError("Malformed signature timestamp") from None
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise InvalidWebhookSignatureError("Malformed signature header")

    now = now if now is not None else time.time()
    if abs(now - timestamp) > tolerance_seconds:
        raise InvalidWebhookSignatureError(
            "Signature timestamp outside tolerance",
            details={"tolerance_seconds": tolerance_seconds},
        )

    expected = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + payload,
        hashlib.sha256,
    ).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidWebhookSignatureError("Signature mismatch")


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _cents(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(int(value)) / 100


def _subscription_price_id(data: Dict[str, Any]) -> Optional[str]:
    items = (data.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _invoice_period(data: Dict[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    lines = (data.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    return _from_unix(period.get("start")), _from_unix(period.get("end"))


class BillingWebhookService:
    """Translate billing provider events into license transitions."""

    def __init__(
        self,
        db: Session,
        state: LicenseStateService,
        catalog: PlanCatalog,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.state = state
        self.catalog = catalog
        self.clock = clock
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Optional[List[TransitionResult]]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_updated,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_payment_succeeded,
            "invoice.paid": self._on_payment_succeeded,
            "invoice.payment_failed": self._on_payment_failed,
            "customer.deleted": self._on_customer_deleted,
        }

    def process(self, external_event_id: str, event_type: str, data: Dict[str, Any]) -> WebhookOutcome:
        """
        Apply one webhook at most once.

        Returns:
            WebhookOutcome with status ``duplicate`` for an already recorded
            event id, ``ignored`` when the event has no license effect

        Raises:
            InvalidWebhookPayloadError: Required fields are missing
            AuroraSyncError: A transition was rejected; nothing was persisted
        """
        started = time.perf_counter()
        outcome = WebhookOutcome(external_event_id=external_event_id, event_type=event_type, status="processed")

        try:
            with self.state.transaction(f"webhook:{event_type}"):
                ledger = IdempotencyLedger.record_if_new(self.db, external_event_id, event_type)
                if not ledger.is_new:
                    outcome.status = "duplicate"
                else:
                    handler = self._handlers.get(event_type)
                    if handler is None and event_type not in LEDGER_ONLY_EVENTS:
                        logger.info("webhook_event_unhandled", event_type=event_type)
                    results = handler(data) if handler is not None else None
                    if results is None:
                        outcome.status = "ignored"
                    else:
                        outcome.event_ids = [event_id for result in results for event_id in result.event_ids]
                    IdempotencyLedger.mark_processed(self.db, ledger.record, self.clock())
        except Exception:
            webhook_events_total.labels(event_type=event_type, outcome="failed").inc()
            logger.error(
                "billing_webhook_failed",
                external_event_id=external_event_id,
                event_type=event_type,
                exc_info=True,
            )
            raise

        webhook_events_total.labels(event_type=event_type, outcome=outcome.status).inc()
        webhook_processing_seconds.labels(event_type=event_type).observe(time.perf_counter() - started)
        logger.info(
            "billing_webhook_processed",
            external_event_id=external_event_id,
            event_type=event_type,
            status=outcome.status,
            event_count=len(outcome.event_ids),
        )
        return outcome

    # Handlers return None when the event had no effect

    def _on_checkout_completed(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        metadata = data.get("metadata") or {}
        customer_id = metadata.get("customerId") or metadata.get("customer_id")
        plan_id = metadata.get("planId") or metadata.get("plan_id")
        if not customer_id or not plan_id:
            raise InvalidWebhookPayloadError(
                "Checkout session without customer or plan metadata",
                details={"checkout_session_id": data.get("id")},
            )
        if not data.get("subscription"):
            # One-off payments carry no license
            return None

        billing_cycle = metadata.get("billingCycle") or metadata.get("billing_cycle") or BillingCycle.MONTHLY.value
        result = self.state.activate_from_checkout(
            customer_id=customer_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            external_subscription_id=data.get("subscription"),
            external_customer_id=data.get("customer"),
            trial_end=_from_unix(data.get("trial_end")),
            current_period_start=_from_unix(data.get("current_period_start")),
            current_period_end=_from_unix(data.get("current_period_end")),
        )
        return [result]

    def _on_subscription_updated(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        subscription = self.state.find_by_external_id(data.get("id"))
        if subscription is None:
            logger.info("webhook_subscription_unknown", external_subscription_id=data.get("id"))
            return None

        status = PROVIDER_STATUS_MAP.get(data.get("status") or "")
        if status is None:
            return None

        results: List[TransitionResult] = []
        license = self.state.current_license(subscription)

        price = self.catalog.resolve_price(_subscription_price_id(data))
        plan_changed = price is not None and (
            price.plan_id != subscription.plan_id or price.billing_cycle != subscription.billing_cycle
        )
        if plan_changed and license.status in _LIVE and status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            results.append(
                self.state.revoke_tier(subscription.id, price.plan_id, price.billing_cycle, reason="provider_plan_change")
            )
            license = self.state.current_license(subscription)

        if status == SubscriptionStatus.PAST_DUE:
            if license.status in _LIVE:
                results.append(self.state.mark_past_due(subscription.id))
            return results or None

        if status == SubscriptionStatus.CANCELLED:
            if license.status not in (LicenseStatus.CANCELLED, LicenseStatus.REVOKED):
                results.append(self.state.deactivate(subscription.id, "subscription_cancelled"))
            return results or None

        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) and license.status in (
            LicenseStatus.PAST_DUE,
            LicenseStatus.CANCELLED,
        ):
            results.append(self.state.reactivate(subscription.id, reason="provider_reactivated"))
            return results

        cancel_at_period_end = bool(data.get("cancel_at_period_end"))
        if cancel_at_period_end and not subscription.cancel_at_period_end:
            results.append(self.state.schedule_cancellation(subscription.id, reason="provider_scheduled_cancellation"))
        elif not cancel_at_period_end and subscription.cancel_at_period_end:
            results.append(self.state.reactivate(subscription.id, reason="provider_cancellation_undone"))
        else:
            results.append(
                self.state.sync_subscription_status(
                    subscription.id,
                    status=status,
                    current_period_start=_from_unix(data.get("current_period_start")),
                    current_period_end=_from_unix(data.get("current_period_end")),
                    trial_end=_from_unix(data.get("trial_end")),
                )
            )
        return results

    def _on_subscription_deleted(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        subscription = self.state.find_by_external_id(data.get("id"))
        if subscription is None:
            return None
        license = self.state.current_license(subscription)
        if license.status in (LicenseStatus.CANCELLED, LicenseStatus.REVOKED):
            return None
        return [self.state.deactivate(subscription.id, "subscription_deleted")]

    def _on_payment_succeeded(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        subscription = self.state.find_by_external_id(data.get("subscription"))
        if subscription is None:
            return None

        license = self.state.current_license(subscription)
        period_start, period_end = _invoice_period(data)
        amount_paid = _cents(data.get("amount_paid"))
        currency = data.get("currency")

        if license.status in (LicenseStatus.PAST_DUE, LicenseStatus.CANCELLED):
            result = self.state.restore_on_payment_recovery(
                subscription.id,
                amount_paid=amount_paid,
                currency=currency,
                current_period_start=period_start,
                current_period_end=period_end,
            )
        elif license.status in _LIVE:
            result = self.state.record_payment(
                subscription.id,
                amount_paid=amount_paid,
                currency=currency,
                current_period_start=period_start,
                current_period_end=period_end,
            )
        else:
            return None
        return [result]

    def _on_payment_failed(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        subscription = self.state.find_by_external_id(data.get("subscription"))
        if subscription is None:
            return None
        license = self.state.current_license(subscription)
        if license.status not in _LIVE:
            return None
        return [self.state.mark_past_due(subscription.id)]

    def _on_customer_deleted(self, data: Dict[str, Any]) -> Optional[List[TransitionResult]]:
        external_customer_id = data.get("id")
        if not external_customer_id:
            raise InvalidWebhookPayloadError("Customer event without id")

        subscription_ids = self.db.scalars(
            select(Subscription.id).where(
                Subscription.external_customer_id == external_customer_id,
                Subscription.status.in_(
                    (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)
                ),
            )
        ).all()
        results = [self.state.deactivate(subscription_id, "customer_deleted") for subscription_id in subscription_ids]
        return results or None

