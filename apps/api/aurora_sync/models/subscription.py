"""
Subscription model: one billing-cycle record mirrored from the billing provider.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, TimestampMixin, UTCDateTime
from .enums import BillingCycle, SubscriptionStatus, enum_values

if TYPE_CHECKING:
    from .license import License


class Subscription(Base, TimestampMixin):
    """Billing-cycle record. Status transitions drive, but are decoupled from, license transitions."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    customer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Owning customer identifier"
    )

    external_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Billing provider subscription id"
    )

    external_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider customer id"
    )

    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SQLEnum(BillingCycle, name="billing_cycle_enum", values_callable=enum_values),
        nullable=False
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, name="subscription_status_enum", values_callable=enum_values),
        nullable=False,
        index=True
    )

    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    past_due_since: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Start of the payment grace period"
    )

    licenses: Mapped[list[License]] = relationship(
        "License",
        back_populates="subscription",
        lazy="select"
    )

    __table_args__ = (
        Index("idx_subscriptions_customer_status", "customer_id", "status"),
    )

    @property
    def is_live(self) -> bool:
        """Active or trialing; at most one per customer."""
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
