"""
Append-only audit trail of delivery attempts.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, UTCDateTime
from .enums import RetryResult, enum_values


class EventRetryRecord(Base):
    __tablename__ = "event_retry_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False)
    machine_id_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    result: Mapped[RetryResult] = mapped_column(
        SQLEnum(RetryResult, name="retry_result_enum", values_callable=enum_values),
        nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Null when the attempt exhausted the budget"
    )
    backoff_delay_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    attempted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_event_retry_history_event_machine", "event_id", "machine_id_hash"),
        Index("idx_event_retry_history_license_time", "license_key", "attempted_at"),
    )
