"""
Per-terminal delivery state: the retry queue keyed by next eligible attempt time.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, TimestampMixin, UTCDateTime
from .enums import DeliveryStatus, enum_values

if TYPE_CHECKING:
    from .subscription_event import SubscriptionEvent


class EventDelivery(Base, TimestampMixin):
    """Delivery of one event to one terminal."""

    __tablename__ = "event_deliveries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_id: Mapped[str] = mapped_column(
        ForeignKey("subscription_events.event_id", ondelete="CASCADE"),
        nullable=False
    )
    license_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    machine_id_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, name="delivery_status_enum", values_callable=enum_values),
        nullable=False,
        default=DeliveryStatus.PENDING
    )

    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Failed attempts so far"
    )

    next_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Next push (pending) or ack deadline (awaiting_ack)"
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    event: Mapped[SubscriptionEvent] = relationship(
        "SubscriptionEvent",
        back_populates="deliveries",
        lazy="joined"
    )

    __table_args__ = (
        UniqueConstraint("event_id", "machine_id_hash", name="uq_event_deliveries_event_machine"),
        Index("idx_event_deliveries_due", "status", "next_attempt_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (DeliveryStatus.PENDING, DeliveryStatus.AWAITING_ACK)
