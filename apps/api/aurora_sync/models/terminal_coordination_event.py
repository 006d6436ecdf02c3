"""
Record of each coordination broadcast and its per-terminal delivery status.
"""

from __future__ import annotations

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, TimestampMixin


class TerminalCoordinationEvent(Base, TimestampMixin):
    __tablename__ = "terminal_coordination_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    license_key: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    source_machine_id_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_machine_id_hashes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    delivery_status: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="machine_id_hash -> pending | acknowledged | failed"
    )

    __table_args__ = (
        Index("idx_terminal_coordination_events_license", "license_key", "created_at"),
    )
