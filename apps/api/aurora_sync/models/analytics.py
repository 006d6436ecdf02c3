"""
Derived analytics tables. Everything here can be rebuilt from the
acknowledgment, retry and dead-letter tables.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, TimestampMixin, UTCDateTime
from .enums import HealthStatus, PatternSeverity, PatternType, PerformanceTrend, enum_values


class LicenseHealthMetric(Base, TimestampMixin):
    """One health score calculation for a license."""

    __tablename__ = "license_health_metrics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    license_key: Mapped[str] = mapped_column(String(64), nullable=False)

    health_score: Mapped[int] = mapped_column(Integer, nullable=False)
    health_status: Mapped[HealthStatus] = mapped_column(
        SQLEnum(HealthStatus, name="health_status_enum", values_callable=enum_values),
        nullable=False
    )

    event_success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    avg_processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_dlq_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    performance_trend: Mapped[PerformanceTrend] = mapped_column(
        SQLEnum(PerformanceTrend, name="performance_trend_enum", values_callable=enum_values),
        nullable=False,
        default=PerformanceTrend.STABLE
    )
    failure_patterns: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    recommendations: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    calculated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_license_health_metrics_license_time", "license_key", "calculated_at"),
    )


class FailurePattern(Base, TimestampMixin):
    """A recurring failure signature detected over the analysis window."""

    __tablename__ = "failure_patterns"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    pattern_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="pattern_type:license_key:signature"
    )
    pattern_type: Mapped[PatternType] = mapped_column(
        SQLEnum(PatternType, name="pattern_type_enum", values_callable=enum_values),
        nullable=False
    )
    license_key: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[PatternSeverity] = mapped_column(
        SQLEnum(PatternSeverity, name="pattern_severity_enum", values_callable=enum_values),
        nullable=False
    )
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class PerformanceMetric(Base, TimestampMixin):
    """Hourly delivery aggregates per license."""

    __tablename__ = "performance_metrics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    license_key: Mapped[str] = mapped_column(String(64), nullable=False)
    bucket_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    events_acknowledged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_performance_metrics_license_bucket",
            "license_key", "bucket_start",
            unique=True
        ),
    )
