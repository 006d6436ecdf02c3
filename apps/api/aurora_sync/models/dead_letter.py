"""
Dead-letter queue entries for deliveries that will not complete on their own.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, TimestampMixin, UTCDateTime
from .enums import DeadLetterStatus, FailureClassification, enum_values


class DeadLetterEntry(Base, TimestampMixin):
    """Created only by the delivery coordinator.

    The payload is a copy of the original event so the entry outlives the
    replay window. Terminal states are ``resolved`` and ``abandoned``.
    """

    __tablename__ = "dead_letter_queue"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    machine_id_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_history: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Attempts that led here, oldest first"
    )

    failure_classification: Mapped[FailureClassification] = mapped_column(
        SQLEnum(FailureClassification, name="failure_classification_enum", values_callable=enum_values),
        nullable=False
    )

    status: Mapped[DeadLetterStatus] = mapped_column(
        SQLEnum(DeadLetterStatus, name="dead_letter_status_enum", values_callable=enum_values),
        nullable=False,
        default=DeadLetterStatus.PENDING_REVIEW
    )

    first_failed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_failed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "machine_id_hash", name="uq_dead_letter_queue_event_machine"),
        Index("idx_dead_letter_queue_status", "status", "created_at"),
    )

    @property
    def is_closed(self) -> bool:
        return self.status in (DeadLetterStatus.RESOLVED, DeadLetterStatus.ABANDONED)
