"""
Audit trail for every composite license/subscription transition.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, TimestampMixin, UTCDateTime
from .enums import ChangeType, enum_values


class SubscriptionChange(Base, TimestampMixin):
    """One row per committed transition, written in the same transaction."""

    __tablename__ = "subscription_changes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    change_type: Mapped[ChangeType] = mapped_column(
        SQLEnum(ChangeType, name="change_type_enum", values_callable=enum_values),
        nullable=False
    )

    previous_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    previous_billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    previous_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    new_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    proration_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    previous_license_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_license_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    effective_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    change_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict
    )

    __table_args__ = (
        Index("idx_subscription_changes_customer_type", "customer_id", "change_type"),
    )
