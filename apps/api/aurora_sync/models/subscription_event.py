"""
Outbound event log and replay buffer.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, JSONType, UTCDateTime

if TYPE_CHECKING:
    from .event_delivery import EventDelivery


class SubscriptionEvent(Base):
    """One immutable state change broadcast to the terminals of a license.

    Rows are retained for the replay window and garbage-collected after
    ``expires_at``. ``id`` is monotonic and breaks ties between events created
    within the same timestamp.
    """

    __tablename__ = "subscription_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Random identifier, never derived from content"
    )

    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    license_key: Mapped[str] = mapped_column(String(64), nullable=False)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    deliveries: Mapped[list[EventDelivery]] = relationship(
        "EventDelivery",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select"
    )

    __table_args__ = (
        Index("idx_subscription_events_license_created", "license_key", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(event_id='{self.event_id}', type='{self.event_type}')>"

    def to_envelope(self) -> dict:
        """Wire shape pushed to terminals and returned by replay."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }
