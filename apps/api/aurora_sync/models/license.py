"""
License model: the authoritative activation record terminals validate against.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, TimestampMixin, UTCDateTime
from .enums import LicenseStatus, enum_values

if TYPE_CHECKING:
    from .subscription import Subscription


class License(Base, TimestampMixin):
    """Desktop license bound to a customer and, while billed, a subscription."""

    __tablename__ = "licenses"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    license_key: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        comment="AUR-{tier}-V2-{random}-{signature}"
    )

    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    tier_code: Mapped[str] = mapped_column(String(8), nullable=False)

    status: Mapped[LicenseStatus] = mapped_column(
        SQLEnum(LicenseStatus, name="license_status_enum", values_callable=enum_values),
        nullable=False,
        index=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    max_terminals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    subscription: Mapped[Subscription | None] = relationship(
        "Subscription",
        back_populates="licenses",
        lazy="select"
    )

    __table_args__ = (
        CheckConstraint("max_terminals > 0", name="max_terminals_positive"),
    )

    def __repr__(self) -> str:
        return f"<License(id={self.id}, status='{self.status.value}')>"
