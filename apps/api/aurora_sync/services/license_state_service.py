"""
License state store: composite subscription/license transitions.

Every public transition runs in one database transaction that covers the
subscription row, the license row (and a reissued license when the plan tier
changes), the ``subscription_changes`` audit row, session deactivation and the
outbound events with their delivery rows. Any exception rolls all of it back
and propagates; deliveries are dispatched only after commit.

License state machine::

    trialing --> active | past_due | cancelled
    active   <-> past_due
    active | past_due --> cancelled
    cancelled | past_due --> active      (reactivation / payment recovery only)
    any      --> revoked                  (terminal)
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.exceptions import (
    AuroraSyncError,
    ErrorCode,
    LicenseTransitionError,
    NotFoundError,
    TransitionConflictError,
)
from ..core.logging import get_logger
from ..metrics import license_transitions_total
from ..models.enums import BillingCycle, ChangeType, EventType, LicenseStatus, SubscriptionStatus
from ..models.license import License
from ..models.subscription import Subscription
from ..models.subscription_change import SubscriptionChange
from ..schemas.events import (
    LicenseReactivatedPayload,
    LicenseRevokedPayload,
    PaymentSucceededPayload,
    PlanChangedPayload,
    SubscriptionCancelledPayload,
    SubscriptionPastDuePayload,
    SubscriptionReactivatedPayload,
    SubscriptionUpdatedPayload,
)
from .event_publisher import EventPublisher
from .license_keys import generate_license_key
from .plan_catalog import PlanCatalog
from .terminal_session_service import TerminalSessionRegistry

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[LicenseStatus, FrozenSet[LicenseStatus]] = {
    LicenseStatus.TRIALING: frozenset(
        {LicenseStatus.ACTIVE, LicenseStatus.PAST_DUE, LicenseStatus.CANCELLED, LicenseStatus.REVOKED}
    ),
    LicenseStatus.ACTIVE: frozenset(
        {LicenseStatus.PAST_DUE, LicenseStatus.CANCELLED, LicenseStatus.REVOKED}
    ),
    LicenseStatus.PAST_DUE: frozenset(
        {LicenseStatus.ACTIVE, LicenseStatus.CANCELLED, LicenseStatus.REVOKED}
    ),
    LicenseStatus.CANCELLED: frozenset({LicenseStatus.ACTIVE, LicenseStatus.REVOKED}),
    LicenseStatus.REVOKED: frozenset(),
}

# Statuses under which the license still unlocks the terminal
USABLE_STATUSES = frozenset({LicenseStatus.TRIALING, LicenseStatus.ACTIVE, LicenseStatus.PAST_DUE})

_CENTS = Decimal("0.01")


@dataclass
class TransitionResult:
    subscription: Subscription
    license: License
    change: Optional[SubscriptionChange] = None
    previous_license: Optional[License] = None
    event_ids: List[str] = field(default_factory=list)

    @property
    def license_reissued(self) -> bool:
        return self.previous_license is not None


def _money(value: Optional[Decimal]) -> Optional[Decimal]:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP) if value is not None else None


class LicenseStateService:
    """Atomic license lifecycle transitions."""

    def __init__(
        self,
        db: Session,
        catalog: PlanCatalog,
        publisher: EventPublisher,
        registry: TerminalSessionRegistry,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.catalog = catalog
        self.publisher = publisher
        self.registry = registry
        self.clock = clock
        self._in_transaction = False
        self._committed: List[Tuple[str, str]] = []

    @contextmanager
    def transaction(self, name: str) -> Iterator[None]:
        """
        Unit of work for one or more transitions.

        Nested use joins the outer unit; only the outermost commits, rolls
        back and dispatches deliveries.
        """
        if self._in_transaction:
            yield
            return

        self._in_transaction = True
        try:
            yield
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.publisher.discard_pending()
            self._committed = []
            logger.error(
                "license_transition_rolled_back",
                transition=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            self._in_transaction = False

        for transition, to_status in self._committed:
            license_transitions_total.labels(transition=transition, to_status=to_status).inc()
        self._committed = []
        self.publisher.dispatch_pending()

    # Lookups

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self.db.scalar(
            select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        )
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
                details={"subscription_id": subscription_id},
            )
        return subscription

    def find_by_external_id(self, external_subscription_id: Optional[str]) -> Optional[Subscription]:
        if not external_subscription_id:
            return None
        return self.db.scalar(
            select(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .with_for_update()
        )

    def current_license(self, subscription: Subscription) -> License:
        """Newest license issued for the subscription."""
        license = self.db.scalar(
            select(License)
            .where(License.subscription_id == subscription.id)
            .order_by(License.id.desc())
            .limit(1)
            .with_for_update()
        )
        if license is None:
            raise NotFoundError(
                f"No license for subscription {subscription.id}",
                error_code=ErrorCode.LICENSE_NOT_FOUND,
                details={"subscription_id": subscription.id},
            )
        return license

    def get_license(self, license_key: str) -> License:
        license = self.db.scalar(
            select(License).where(License.license_key == license_key).with_for_update()
        )
        if license is None:
            raise NotFoundError(
                "License not found",
                error_code=ErrorCode.LICENSE_NOT_FOUND,
                details={"license_key": license_key},
            )
        return license

    # Transitions

    def activate_from_checkout(
        self,
        customer_id: str,
        plan_id: str,
        billing_cycle: BillingCycle | str = BillingCycle.MONTHLY,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        trial_end: Optional[datetime] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Create the subscription and license for a completed checkout.

        Prior live subscriptions of the customer are cancelled in the same
        transaction. A checkout for an already known external subscription
        that still has a license returns it unchanged.
        """
        billing_cycle = BillingCycle(billing_cycle)
        plan = self.catalog.get(plan_id)

        with self.transaction("activate_from_checkout"):
            now = self.clock()

            existing = self.find_by_external_id(external_subscription_id)
            if existing is not None:
                license = self.db.scalar(
                    select(License).where(License.subscription_id == existing.id).order_by(License.id.desc()).limit(1)
                )
                if license is not None:
                    logger.info(
                        "checkout_already_applied",
                        subscription_id=existing.id,
                        external_subscription_id=external_subscription_id,
                    )
                    return TransitionResult(subscription=existing, license=license)

            for prior in self._live_subscriptions(customer_id):
                if existing is not None and prior.id == existing.id:
                    continue
                self._cancel_superseded(prior, now)

            status = SubscriptionStatus.TRIALING if trial_end and trial_end > now else SubscriptionStatus.ACTIVE
            subscription = existing or Subscription(customer_id=customer_id)
            subscription.external_subscription_id = external_subscription_id
            subscription.external_customer_id = external_customer_id
            subscription.plan_id = plan.plan_id
            subscription.billing_cycle = billing_cycle
            subscription.status = status
            subscription.trial_start = now if status == SubscriptionStatus.TRIALING else None
            subscription.trial_end = trial_end if status == SubscriptionStatus.TRIALING else None
            subscription.current_period_start = current_period_start or now
            subscription.current_period_end = current_period_end
            subscription.cancel_at_period_end = False
            self.db.add(subscription)
            self.db.flush()

            license = License(
                license_key=generate_license_key(plan.tier_code, customer_id),
                customer_id=customer_id,
                subscription_id=subscription.id,
                plan_id=plan.plan_id,
                tier_code=plan.tier_code,
                status=LicenseStatus.TRIALING if status == SubscriptionStatus.TRIALING else LicenseStatus.ACTIVE,
                is_active=True,
                max_terminals=plan.max_terminals,
                issued_at=now,
                expires_at=subscription.trial_end or current_period_end,
            )
            self.db.add(license)
            self.db.flush()

            change = self._record_change(
                subscription,
                ChangeType.SUBSCRIPTION_CREATED,
                now,
                new_plan=plan.plan_id,
                new_billing_cycle=billing_cycle,
                new_price=plan.price(billing_cycle),
                new_license_key=license.license_key,
                reason="checkout_completed",
            )
            self._mark("activate_from_checkout", license)

        logger.info(
            "license_activated",
            customer_id=customer_id,
            subscription_id=subscription.id,
            license_key=license.license_key,
            plan_id=plan.plan_id,
            status=license.status.value,
        )
        return TransitionResult(subscription=subscription, license=license, change=change)

    def reactivate(self, subscription_id: int, reason: str = "user_reactivation") -> TransitionResult:
        """
        Return a cancelled or past-due subscription to active, or undo a
        scheduled cancellation.

        Raises:
            LicenseTransitionError: Nothing to reactivate
        """
        with self.transaction("reactivate"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)

            undo_schedule = (
                subscription.cancel_at_period_end
                and license.status in (LicenseStatus.ACTIVE, LicenseStatus.TRIALING)
            )
            if not undo_schedule:
                self._ensure_transition(license, LicenseStatus.ACTIVE, "reactivate")

            was_inactive = not license.is_active
            previous_status = subscription.status

            subscription.cancel_at_period_end = False
            subscription.cancelled_at = None
            if not undo_schedule:
                subscription.status = SubscriptionStatus.ACTIVE
                subscription.past_due_since = None
                self._activate_license(license)

            change = self._record_change(
                subscription,
                ChangeType.REACTIVATION,
                now,
                previous_plan=subscription.plan_id,
                new_plan=subscription.plan_id,
                reason=reason,
                metadata={"previous_status": previous_status.value, "undo_scheduled_cancellation": undo_schedule},
            )

            event_ids = [
                self.publisher.publish(
                    license.license_key,
                    EventType.SUBSCRIPTION_REACTIVATED,
                    SubscriptionReactivatedPayload(
                        subscription_id=subscription.id,
                        status=subscription.status.value,
                        reactivated_at=now,
                    ),
                ).event_id
            ]
            if was_inactive:
                event_ids.append(self._publish_license_reactivated(license, reason, now))
            self._mark("reactivate", license)

        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=event_ids)

    def deactivate(self, subscription_id: int, reason: str) -> TransitionResult:
        """
        Cancel the subscription and deactivate its license and every session.

        Emits exactly one ``license_revoked`` to the terminals that were
        known before deactivation.

        Raises:
            LicenseTransitionError: The license is already cancelled or revoked
        """
        with self.transaction("deactivate"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)
            self._ensure_transition(license, LicenseStatus.CANCELLED, "deactivate")

            targets = self.registry.resolve_targets(license.license_key)

            previous_status = subscription.status
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancelled_at = now
            subscription.cancel_at_period_end = False

            license.status = LicenseStatus.CANCELLED
            license.is_active = False
            license.revoked_at = now
            license.revocation_reason = reason
            self.db.flush()

            self.registry.deactivate_all(license.license_key, reason)

            change = self._record_change(
                subscription,
                ChangeType.CANCELLATION,
                now,
                previous_plan=subscription.plan_id,
                previous_billing_cycle=subscription.billing_cycle,
                previous_license_key=license.license_key,
                reason=reason,
                metadata={"previous_status": previous_status.value, "terminals_deactivated": len(targets)},
            )

            event = self.publisher.publish(
                license.license_key,
                EventType.LICENSE_REVOKED,
                LicenseRevokedPayload(
                    reason=reason,
                    revoked_at=now,
                    should_disable=True,
                    grace_period_end=now + timedelta(days=settings.cancellation_grace_days),
                ),
                targets=targets,
            )
            self._mark("deactivate", license)

        logger.info(
            "license_deactivated",
            subscription_id=subscription.id,
            license_key=license.license_key,
            reason=reason,
            terminal_count=len(targets),
        )
        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=[event.event_id])

    def revoke_tier(
        self,
        subscription_id: int,
        new_plan_id: str,
        new_billing_cycle: Optional[BillingCycle | str] = None,
        reason: str = "plan_change",
        proration_amount: Optional[Decimal] = None,
    ) -> TransitionResult:
        """
        Change plan and/or billing cycle.

        When the key reissue policy applies, the current license is revoked
        and a new key is issued for the same subscription; terminals learn
        the new key from ``plan_changed`` on the old key.

        Raises:
            LicenseTransitionError: License not active, or nothing changes
            TransitionConflictError: New plan allows fewer terminals than are connected
        """
        new_plan = self.catalog.get(new_plan_id)

        with self.transaction("revoke_tier"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)

            if license.status not in (LicenseStatus.ACTIVE, LicenseStatus.TRIALING):
                raise LicenseTransitionError(
                    f"Cannot change plan of a {license.status.value} license",
                    details={"license_key": license.license_key, "status": license.status.value},
                )

            previous_plan = self.catalog.get(subscription.plan_id)
            previous_cycle = subscription.billing_cycle
            new_cycle = BillingCycle(new_billing_cycle) if new_billing_cycle else previous_cycle
            if previous_plan.plan_id == new_plan.plan_id and previous_cycle == new_cycle:
                raise LicenseTransitionError(
                    "Plan and billing cycle are unchanged",
                    details={"plan_id": new_plan.plan_id, "billing_cycle": new_cycle.value},
                )

            connected = self.registry.count_connected(license.license_key)
            if new_plan.max_terminals < connected:
                raise TransitionConflictError(
                    "New plan allows fewer terminals than are connected",
                    details={
                        "license_key": license.license_key,
                        "connected_terminals": connected,
                        "new_max_terminals": new_plan.max_terminals,
                    },
                )

            previous_price = previous_plan.price(previous_cycle)
            new_price = new_plan.price(new_cycle)
            if proration_amount is None:
                proration_amount = self._proration(subscription, previous_price, new_price, now)

            if new_plan.rank > previous_plan.rank:
                change_type = ChangeType.PLAN_UPGRADE
            elif new_plan.rank < previous_plan.rank:
                change_type = ChangeType.PLAN_DOWNGRADE
            else:
                change_type = ChangeType.CYCLE_CHANGE

            reissue = self.catalog.requires_key_reissue(
                previous_plan.plan_id, new_plan.plan_id, previous_cycle, new_cycle
            )
            targets = self.registry.resolve_targets(license.license_key)

            subscription.plan_id = new_plan.plan_id
            subscription.billing_cycle = new_cycle

            previous_license: Optional[License] = None
            current = license
            if reissue:
                previous_license = license
                license.status = LicenseStatus.REVOKED
                license.is_active = False
                license.revoked_at = now
                license.revocation_reason = "plan_tier_change"
                current = License(
                    license_key=generate_license_key(new_plan.tier_code, subscription.customer_id),
                    customer_id=subscription.customer_id,
                    subscription_id=subscription.id,
                    plan_id=new_plan.plan_id,
                    tier_code=new_plan.tier_code,
                    status=(
                        LicenseStatus.TRIALING
                        if subscription.status == SubscriptionStatus.TRIALING
                        else LicenseStatus.ACTIVE
                    ),
                    is_active=True,
                    max_terminals=new_plan.max_terminals,
                    issued_at=now,
                    expires_at=license.expires_at,
                )
                self.db.add(current)
                self.db.flush()
                self.registry.deactivate_all(previous_license.license_key, "plan_tier_change")
            else:
                license.plan_id = new_plan.plan_id
                license.tier_code = new_plan.tier_code
                license.max_terminals = new_plan.max_terminals
                self.db.flush()

            change = self._record_change(
                subscription,
                change_type,
                now,
                previous_plan=previous_plan.plan_id,
                new_plan=new_plan.plan_id,
                previous_billing_cycle=previous_cycle,
                new_billing_cycle=new_cycle,
                previous_price=previous_price,
                new_price=new_price,
                proration_amount=proration_amount,
                previous_license_key=license.license_key,
                new_license_key=current.license_key,
                reason=reason,
                metadata={"license_reissued": reissue, "reissue_policy": self.catalog.reissue_policy},
            )

            announce_key = license.license_key
            event_ids = [
                self.publisher.publish(
                    announce_key,
                    EventType.PLAN_CHANGED,
                    PlanChangedPayload(
                        subscription_id=subscription.id,
                        previous_plan=previous_plan.plan_id,
                        new_plan=new_plan.plan_id,
                        previous_billing_cycle=previous_cycle.value,
                        new_billing_cycle=new_cycle.value,
                        max_terminals=new_plan.max_terminals,
                        license_reissued=reissue,
                        new_license_key=current.license_key if reissue else None,
                        effective_at=now,
                    ),
                    targets=targets,
                ).event_id
            ]
            if reissue:
                event_ids.append(
                    self.publisher.publish(
                        announce_key,
                        EventType.LICENSE_REVOKED,
                        LicenseRevokedPayload(
                            reason="plan_tier_change",
                            revoked_at=now,
                            should_disable=False,
                            grace_period_end=None,
                        ),
                        targets=targets,
                    ).event_id
                )
            self._mark(change_type.value, current)

        logger.info(
            "license_plan_changed",
            subscription_id=subscription.id,
            previous_plan=previous_plan.plan_id,
            new_plan=new_plan.plan_id,
            license_reissued=reissue,
            license_key=current.license_key,
        )
        return TransitionResult(
            subscription=subscription,
            license=current,
            change=change,
            previous_license=previous_license,
            event_ids=event_ids,
        )

    change_plan = revoke_tier

    def restore_on_payment_recovery(
        self,
        subscription_id: int,
        amount_paid: Optional[Decimal] = None,
        currency: Optional[str] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Reactivate a past-due or cancelled subscription after a successful payment.

        Raises:
            LicenseTransitionError: The license is not past due or cancelled
        """
        with self.transaction("restore_on_payment_recovery"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)

            if license.status not in (LicenseStatus.PAST_DUE, LicenseStatus.CANCELLED):
                raise LicenseTransitionError(
                    f"No payment recovery from {license.status.value}",
                    details={"license_key": license.license_key, "status": license.status.value},
                )

            was_inactive = not license.is_active
            previous_status = subscription.status

            subscription.status = SubscriptionStatus.ACTIVE
            subscription.past_due_since = None
            subscription.cancelled_at = None
            subscription.cancel_at_period_end = False
            if current_period_start is not None:
                subscription.current_period_start = current_period_start
            if current_period_end is not None:
                subscription.current_period_end = current_period_end
                license.expires_at = current_period_end
            self._activate_license(license)

            change = self._record_change(
                subscription,
                ChangeType.PAYMENT_RECOVERED,
                now,
                previous_plan=subscription.plan_id,
                new_plan=subscription.plan_id,
                new_price=amount_paid,
                reason="payment_recovered",
                metadata={"previous_status": previous_status.value, "currency": currency},
            )

            event_ids = [
                self.publisher.publish(
                    license.license_key,
                    EventType.PAYMENT_SUCCEEDED,
                    PaymentSucceededPayload(
                        subscription_id=subscription.id,
                        amount_paid=float(amount_paid) if amount_paid is not None else None,
                        currency=currency,
                        paid_at=now,
                        current_period_end=subscription.current_period_end,
                    ),
                ).event_id,
                self.publisher.publish(
                    license.license_key,
                    EventType.SUBSCRIPTION_REACTIVATED,
                    SubscriptionReactivatedPayload(
                        subscription_id=subscription.id,
                        status=subscription.status.value,
                        reactivated_at=now,
                    ),
                ).event_id,
            ]
            if was_inactive:
                event_ids.append(self._publish_license_reactivated(license, "payment_recovered", now))
            self._mark("restore_on_payment_recovery", license)

        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=event_ids)

    def mark_past_due(self, subscription_id: int, reason: str = "payment_failed") -> TransitionResult:
        """
        Enter the payment grace period. The license keeps working until
        ``past_due_grace_days`` have passed.
        """
        with self.transaction("mark_past_due"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)
            self._ensure_transition(license, LicenseStatus.PAST_DUE, "mark_past_due")

            previous_status = subscription.status
            subscription.status = SubscriptionStatus.PAST_DUE
            subscription.past_due_since = now
            license.status = LicenseStatus.PAST_DUE
            grace_period_end = now + timedelta(days=settings.past_due_grace_days)

            change = self._record_change(
                subscription,
                ChangeType.PAYMENT_FAILED,
                now,
                previous_plan=subscription.plan_id,
                new_plan=subscription.plan_id,
                reason=reason,
                metadata={"previous_status": previous_status.value, "grace_period_end": grace_period_end.isoformat()},
            )
            event = self.publisher.publish(
                license.license_key,
                EventType.SUBSCRIPTION_PAST_DUE,
                SubscriptionPastDuePayload(
                    subscription_id=subscription.id,
                    past_due_since=now,
                    grace_period_end=grace_period_end,
                    should_disable=False,
                ),
            )
            self._mark("mark_past_due", license)

        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=[event.event_id])

    def revoke(self, license_key: str, reason: str, actor_id: str = "admin") -> TransitionResult:
        """Administrative revocation. Terminal state; only a new checkout restores access."""
        with self.transaction("revoke"):
            now = self.clock()
            license = self.get_license(license_key)
            self._ensure_transition(license, LicenseStatus.REVOKED, "revoke")
            subscription = license.subscription

            targets = self.registry.resolve_targets(license_key)
            license.status = LicenseStatus.REVOKED
            license.is_active = False
            license.revoked_at = now
            license.revocation_reason = reason
            self.db.flush()
            self.registry.deactivate_all(license_key, reason)

            change = self._record_change(
                subscription,
                ChangeType.REVOCATION,
                now,
                customer_id=license.customer_id,
                previous_license_key=license_key,
                reason=reason,
                metadata={"actor_id": actor_id},
            )
            event = self.publisher.publish(
                license_key,
                EventType.LICENSE_REVOKED,
                LicenseRevokedPayload(reason=reason, revoked_at=now, should_disable=True),
                targets=targets,
            )
            self._mark("revoke", license)

        logger.warning("license_revoked", license_key=license_key, reason=reason, actor_id=actor_id)
        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=[event.event_id])

    def schedule_cancellation(self, subscription_id: int, reason: str = "user_cancellation") -> TransitionResult:
        """
        Cancel at the end of the current period. The license stays active
        until the billing provider (or the grace sweep) ends the subscription.
        """
        with self.transaction("schedule_cancellation"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)

            if not subscription.is_live or subscription.cancel_at_period_end:
                raise LicenseTransitionError(
                    "Subscription cannot be scheduled for cancellation",
                    details={
                        "subscription_id": subscription.id,
                        "status": subscription.status.value,
                        "cancel_at_period_end": subscription.cancel_at_period_end,
                    },
                )

            subscription.cancel_at_period_end = True
            effective_at = subscription.current_period_end or now
            grace_period_end = effective_at + timedelta(days=settings.cancellation_grace_days)

            change = self._record_change(
                subscription,
                ChangeType.CANCELLATION_SCHEDULED,
                now,
                previous_plan=subscription.plan_id,
                reason=reason,
                metadata={"effective_at": effective_at.isoformat()},
            )
            event = self.publisher.publish(
                license.license_key,
                EventType.SUBSCRIPTION_CANCELLED,
                SubscriptionCancelledPayload(
                    subscription_id=subscription.id,
                    reason=reason,
                    cancel_immediately=False,
                    cancelled_at=now,
                    effective_at=effective_at,
                    grace_period_end=grace_period_end,
                ),
            )
            self._mark("schedule_cancellation", license)

        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=[event.event_id])

    def sync_subscription_status(
        self,
        subscription_id: int,
        status: Optional[SubscriptionStatus] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Mirror provider-side field changes that are not license transitions.

        A trial converting to a paid subscription moves the license from
        trialing to active here.
        """
        with self.transaction("sync_subscription_status"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)
            previous_status = subscription.status

            if status is not None and status != previous_status:
                if status == SubscriptionStatus.ACTIVE and license.status == LicenseStatus.TRIALING:
                    self._ensure_transition(license, LicenseStatus.ACTIVE, "trial_converted")
                    license.status = LicenseStatus.ACTIVE
                subscription.status = status
            if current_period_start is not None:
                subscription.current_period_start = current_period_start
            if current_period_end is not None:
                subscription.current_period_end = current_period_end
                if license.status != LicenseStatus.TRIALING:
                    license.expires_at = current_period_end
            if trial_end is not None:
                subscription.trial_end = trial_end

            change = None
            if subscription.status != previous_status:
                change = self._record_change(
                    subscription,
                    ChangeType.STATUS_CHANGE,
                    now,
                    previous_plan=subscription.plan_id,
                    new_plan=subscription.plan_id,
                    reason="provider_status_sync",
                    metadata={"previous_status": previous_status.value, "new_status": subscription.status.value},
                )

            event = self.publisher.publish(
                license.license_key,
                EventType.SUBSCRIPTION_UPDATED,
                SubscriptionUpdatedPayload(
                    subscription_id=subscription.id,
                    status=subscription.status.value,
                    previous_status=previous_status.value,
                    cancel_at_period_end=subscription.cancel_at_period_end,
                    current_period_end=subscription.current_period_end,
                    should_disable=not license.is_active,
                ),
            )
            self._mark("sync_subscription_status", license)

        return TransitionResult(subscription=subscription, license=license, change=change, event_ids=[event.event_id])

    def record_payment(
        self,
        subscription_id: int,
        amount_paid: Optional[Decimal] = None,
        currency: Optional[str] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> TransitionResult:
        """Renewal payment on a healthy subscription: extend the period, no audit row."""
        with self.transaction("record_payment"):
            now = self.clock()
            subscription = self.get_subscription(subscription_id)
            license = self.current_license(subscription)

            if current_period_start is not None:
                subscription.current_period_start = current_period_start
            if current_period_end is not None:
                subscription.current_period_end = current_period_end
                license.expires_at = current_period_end

            event = self.publisher.publish(
                license.license_key,
                EventType.PAYMENT_SUCCEEDED,
                PaymentSucceededPayload(
                    subscription_id=subscription.id,
                    amount_paid=float(amount_paid) if amount_paid is not None else None,
                    currency=currency,
                    paid_at=now,
                    current_period_end=subscription.current_period_end,
                ),
            )

        return TransitionResult(subscription=subscription, license=license, event_ids=[event.event_id])

    def expire_grace_periods(self) -> int:
        """
        Deactivate subscriptions whose payment grace period or scheduled
        cancellation has run out. Each subscription is its own transaction.
        """
        now = self.clock()
        past_due_cutoff = now - timedelta(days=settings.past_due_grace_days)

        expired: List[Tuple[int, str]] = [
            (subscription_id, "payment_grace_expired")
            for subscription_id in self.db.scalars(
                select(Subscription.id).where(
                    Subscription.status == SubscriptionStatus.PAST_DUE,
                    Subscription.past_due_since <= past_due_cutoff,
                )
            ).all()
        ]
        expired += [
            (subscription_id, "cancellation_period_ended")
            for subscription_id in self.db.scalars(
                select(Subscription.id).where(
                    Subscription.status.in_((SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)),
                    Subscription.cancel_at_period_end.is_(True),
                    Subscription.current_period_end <= now,
                )
            ).all()
        ]
        self.db.rollback()

        deactivated = 0
        for subscription_id, reason in expired:
            try:
                self.deactivate(subscription_id, reason)
            except AuroraSyncError as e:
                logger.warning(
                    "grace_expiry_skipped",
                    subscription_id=subscription_id,
                    reason=reason,
                    error_code=e.error_code.value,
                )
                continue
            deactivated += 1

        if expired:
            logger.info("grace_periods_expired", candidates=len(expired), deactivated=deactivated)
        return deactivated

    # Helpers

    def _ensure_transition(self, license: License, target: LicenseStatus, transition: str) -> None:
        if target not in ALLOWED_TRANSITIONS[license.status]:
            raise LicenseTransitionError(
                f"Cannot {transition} a {license.status.value} license",
                details={
                    "license_key": license.license_key,
                    "from_status": license.status.value,
                    "to_status": target.value,
                },
            )

    def _activate_license(self, license: License) -> None:
        license.status = LicenseStatus.ACTIVE
        license.is_active = True
        license.revoked_at = None
        license.revocation_reason = None

    def _publish_license_reactivated(self, license: License, reason: str, now: datetime) -> str:
        return self.publisher.publish(
            license.license_key,
            EventType.LICENSE_REACTIVATED,
            LicenseReactivatedPayload(reason=reason, reactivated_at=now, max_terminals=license.max_terminals),
        ).event_id

    def _live_subscriptions(self, customer_id: str) -> List[Subscription]:
        return list(
            self.db.scalars(
                select(Subscription)
                .where(
                    Subscription.customer_id == customer_id,
                    Subscription.status.in_((SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)),
                )
                .with_for_update()
            ).all()
        )

    def _cancel_superseded(self, subscription: Subscription, now: datetime) -> None:
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = now
        subscription.cancel_at_period_end = False

        license = self.db.scalar(
            select(License).where(License.subscription_id == subscription.id).order_by(License.id.desc()).limit(1)
        )
        if license is not None and license.status in USABLE_STATUSES:
            targets = self.registry.resolve_targets(license.license_key)
            license.status = LicenseStatus.CANCELLED
            license.is_active = False
            license.revoked_at = now
            license.revocation_reason = "superseded_by_checkout"
            self.db.flush()
            self.registry.deactivate_all(license.license_key, "superseded_by_checkout")
            self.publisher.publish(
                license.license_key,
                EventType.LICENSE_REVOKED,
                LicenseRevokedPayload(reason="superseded_by_checkout", revoked_at=now, should_disable=True),
                targets=targets,
            )

        self._record_change(
            subscription,
            ChangeType.CANCELLATION,
            now,
            previous_plan=subscription.plan_id,
            previous_license_key=license.license_key if license else None,
            reason="superseded_by_checkout",
        )

    def _proration(
        self,
        subscription: Subscription,
        previous_price: Decimal,
        new_price: Decimal,
        now: datetime,
    ) -> Optional[Decimal]:
        start, end = subscription.current_period_start, subscription.current_period_end
        if start is None or end is None or end <= start or now >= end:
            return None
        remaining = Decimal((end - max(now, start)).total_seconds()) / Decimal((end - start).total_seconds())
        return _money((new_price - previous_price) * remaining)

    def _record_change(
        self,
        subscription: Optional[Subscription],
        change_type: ChangeType,
        now: datetime,
        customer_id: Optional[str] = None,
        previous_plan: Optional[str] = None,
        new_plan: Optional[str] = None,
        previous_billing_cycle: Optional[BillingCycle] = None,
        new_billing_cycle: Optional[BillingCycle] = None,
        previous_price: Optional[Decimal] = None,
        new_price: Optional[Decimal] = None,
        proration_amount: Optional[Decimal] = None,
        previous_license_key: Optional[str] = None,
        new_license_key: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SubscriptionChange:
        change = SubscriptionChange(
            subscription_id=subscription.id if subscription else None,
            customer_id=customer_id or subscription.customer_id,
            change_type=change_type,
            previous_plan=previous_plan,
            new_plan=new_plan,
            previous_billing_cycle=previous_billing_cycle.value if previous_billing_cycle else None,
            new_billing_cycle=new_billing_cycle.value if new_billing_cycle else None,
            previous_price=_money(previous_price),
            new_price=_money(new_price),
            proration_amount=_money(proration_amount),
            previous_license_key=previous_license_key,
            new_license_key=new_license_key,
            reason=reason,
            effective_date=now,
            change_metadata=metadata or {},
        )
        self.db.add(change)
        self.db.flush()
        return change

    def _mark(self, transition: str, license: License) -> None:
        self._committed.append((transition, license.status.value))
