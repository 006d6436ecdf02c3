"""
Terminal session model: one desktop installation connected under a license.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, TimestampMixin, UTCDateTime
from .enums import ConnectionStatus, enum_values


class TerminalSession(Base, TimestampMixin):
    """Connection lifecycle of one terminal.

    Identified by (machine_id_hash, license_key). At most one connected
    session per license holds ``is_primary``.
    """

    __tablename__ = "terminal_sessions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    machine_id_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False)

    terminal_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    os_info: Mapped[str | None] = mapped_column(String(255), nullable=True)

    connection_status: Mapped[ConnectionStatus] = mapped_column(
        SQLEnum(ConnectionStatus, name="connection_status_enum", values_callable=enum_values),
        nullable=False,
        default=ConnectionStatus.CONNECTED
    )

    first_connected_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_connected_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_heartbeat_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    disconnected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("machine_id_hash", "license_key", name="uq_terminal_sessions_machine_license"),
        Index("idx_terminal_sessions_license_status", "license_key", "connection_status"),
        Index("idx_terminal_sessions_heartbeat", "connection_status", "last_heartbeat_at"),
    )

    @property
    def is_connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED
