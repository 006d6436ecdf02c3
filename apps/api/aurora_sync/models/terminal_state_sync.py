"""
Broadcast state-sync operations and their multi-party acknowledgment.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, TimestampMixin, UTCDateTime
from .enums import SyncStatus, enum_values


class TerminalStateSync(Base, TimestampMixin):
    __tablename__ = "terminal_state_sync"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    sync_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)

    source_machine_id_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    target_machine_id_hashes: Mapped[list | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Explicit targets; null means all terminals"
    )
    expected_acknowledgers: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Targets resolved when the sync was created"
    )
    acknowledged_by: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[SyncStatus] = mapped_column(
        SQLEnum(SyncStatus, name="sync_status_enum", values_callable=enum_values),
        nullable=False,
        default=SyncStatus.PENDING
    )

    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_terminal_state_sync_license_status", "license_key", "status"),
    )
