"""
Consumer-side idempotency: at most one acknowledgment per (event, terminal).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, UTCDateTime
from .enums import AckStatus, enum_values


class EventAcknowledgment(Base):
    __tablename__ = "event_acknowledgments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    machine_id_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[AckStatus] = mapped_column(
        SQLEnum(AckStatus, name="ack_status_enum", values_callable=enum_values),
        nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    acknowledged_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "machine_id_hash", name="uq_event_acknowledgments_event_machine"),
        Index("idx_event_acknowledgments_license_time", "license_key", "acknowledged_at"),
    )
