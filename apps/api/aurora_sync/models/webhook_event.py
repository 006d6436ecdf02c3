"""
Idempotency ledger for inbound billing provider webhooks.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, TimestampMixin, UTCDateTime


class WebhookEvent(Base, TimestampMixin):
    """Existence of a row for an external event id is the sole dedup signal."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    external_event_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="Billing provider event id"
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.id}, external_event_id='{self.external_event_id}')>"
