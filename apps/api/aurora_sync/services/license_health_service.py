"""
License health scoring and hourly delivery aggregates.

Score (0-100) = success rate 40% + processing performance 20% + failure
frequency 20% + recovery 10% + active failure patterns 10%.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.logging import get_logger
from ..metrics import licenses_by_health_status
from ..models.analytics import LicenseHealthMetric, PerformanceMetric
from ..models.dead_letter import DeadLetterEntry
from ..models.enums import AckStatus, DeadLetterStatus, HealthStatus, PerformanceTrend, RetryResult
from ..models.event_acknowledgment import EventAcknowledgment
from ..models.event_retry import EventRetryRecord
from ..models.license import License
from .failure_pattern_service import FailurePatternService

logger = get_logger(__name__)

WEIGHTS = {
    "success": 40,
    "performance": 20,
    "failure_frequency": 20,
    "recovery": 10,
    "patterns": 10,
}

HEALTHY_THRESHOLD = 80
DEGRADED_THRESHOLD = 60
TREND_DELTA = 5
INACTIVE_AFTER = timedelta(hours=24)


@dataclass
class EventStats:
    total: int = 0
    successes: int = 0
    failures: int = 0
    avg_processing_time_ms: int = 0
    retries: int = 0
    dead_letters: int = 0
    last_event_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        return self.successes / self.total * 100 if self.total else 100.0


def performance_score(avg_processing_time_ms: int) -> int:
    if avg_processing_time_ms <= 100:
        return 100
    if avg_processing_time_ms <= 500:
        return 90
    if avg_processing_time_ms <= 1000:
        return 70
    if avg_processing_time_ms <= 2000:
        return 50
    return 30


def failure_frequency_score(total: int, failures: int) -> int:
    if total == 0 or failures == 0:
        return 100
    rate = failures / total * 100
    if rate <= 1:
        return 95
    if rate <= 5:
        return 85
    if rate <= 10:
        return 70
    if rate <= 20:
        return 50
    return 30


def recovery_score(dead_letters: int) -> int:
    if dead_letters == 0:
        return 100
    if dead_letters == 1:
        return 90
    if dead_letters <= 3:
        return 80
    if dead_letters <= 5:
        return 60
    if dead_letters <= 10:
        return 40
    return 20


def pattern_score(active_patterns: int) -> int:
    if active_patterns == 0:
        return 100
    if active_patterns == 1:
        return 85
    if active_patterns == 2:
        return 70
    if active_patterns <= 4:
        return 50
    return 30


def health_status(score: int, last_event_at: Optional[datetime], now: datetime) -> HealthStatus:
    if last_event_at is None or now - last_event_at > INACTIVE_AFTER:
        return HealthStatus.INACTIVE
    if score >= HEALTHY_THRESHOLD:
        return HealthStatus.HEALTHY
    if score >= DEGRADED_THRESHOLD:
        return HealthStatus.DEGRADED
    return HealthStatus.CRITICAL


def trend(current: int, previous: Optional[int]) -> PerformanceTrend:
    if previous is None:
        return PerformanceTrend.STABLE
    if current - previous >= TREND_DELTA:
        return PerformanceTrend.IMPROVING
    if current - previous <= -TREND_DELTA:
        return PerformanceTrend.DEGRADING
    return PerformanceTrend.STABLE


class LicenseHealthService:
    """Compute and store health metrics per license."""

    def __init__(
        self,
        db: Session,
        patterns: Optional[FailurePatternService] = None,
        clock: Clock = utc_now,
        window_hours: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.patterns = patterns or FailurePatternService(db, clock=clock)
        self.window = timedelta(hours=window_hours or settings.health_window_hours)

    def calculate(self, license_key: str) -> LicenseHealthMetric:
        """Score one license over the window and store the result."""
        now = self.clock()
        stats = self._event_stats(license_key, now - self.window)
        active_patterns = self.patterns.active_patterns(license_key)

        scores = {
            "success": round(stats.success_rate),
            "performance": performance_score(stats.avg_processing_time_ms),
            "failure_frequency": failure_frequency_score(stats.total, stats.failures),
            "recovery": recovery_score(stats.dead_letters),
            "patterns": pattern_score(len(active_patterns)),
        }
        score = round(sum(scores[name] * weight for name, weight in WEIGHTS.items()) / 100)

        previous = self.db.scalar(
            select(LicenseHealthMetric.health_score)
            .where(LicenseHealthMetric.license_key == license_key)
            .order_by(LicenseHealthMetric.calculated_at.desc(), LicenseHealthMetric.id.desc())
            .limit(1)
        )

        recommendations = []
        if scores["success"] < 90:
            recommendations.append("Low success rate detected. Investigate failure causes and implement fixes.")
        if scores["performance"] < 70:
            recommendations.append(
                f"Slow processing detected (avg {stats.avg_processing_time_ms}ms). Optimize event handlers."
            )
        if scores["failure_frequency"] < 70:
            recommendations.append("High failure frequency. Review error patterns and implement preventive measures.")
        if scores["recovery"] < 70:
            recommendations.append(f"{stats.dead_letters} events in DLQ. Review and resolve failed events.")
        recommendations.extend(f"Active pattern: {pattern.description}" for pattern in active_patterns)
        if not recommendations:
            recommendations.append("System operating normally. No action required.")

        metric = LicenseHealthMetric(
            license_key=license_key,
            health_score=score,
            health_status=health_status(score, stats.last_event_at, now),
            event_success_rate=round(stats.success_rate, 2),
            avg_processing_time_ms=stats.avg_processing_time_ms,
            total_events_processed=stats.total,
            total_failures=stats.failures,
            total_retries=stats.retries,
            total_dlq_events=stats.dead_letters,
            last_event_at=stats.last_event_at,
            last_failure_at=stats.last_failure_at,
            performance_trend=trend(score, previous),
            failure_patterns=[pattern.description for pattern in active_patterns],
            recommendations=recommendations,
            calculated_at=now,
        )
        self.db.add(metric)
        self.db.flush()
        return metric

    def calculate_all(self) -> Dict[str, int]:
        """Score every active license and refresh the status gauge."""
        license_keys = self.db.scalars(select(License.license_key).where(License.is_active.is_(True))).all()
        counts: Counter = Counter()
        for license_key in license_keys:
            counts[self.calculate(license_key).health_status.value] += 1
        self.db.commit()

        for status in HealthStatus:
            licenses_by_health_status.labels(health_status=status.value).set(counts.get(status.value, 0))
        logger.info("license_health_calculated", license_count=len(license_keys), by_status=dict(counts))
        return dict(counts)

    def latest(self, license_key: str) -> Optional[LicenseHealthMetric]:
        return self.db.scalar(
            select(LicenseHealthMetric)
            .where(LicenseHealthMetric.license_key == license_key)
            .order_by(LicenseHealthMetric.calculated_at.desc(), LicenseHealthMetric.id.desc())
            .limit(1)
        )

    def aggregate_performance(self, hours: int = 2) -> int:
        """Rebuild hourly buckets for the last ``hours`` hours. Returns buckets written."""
        now = self.clock()
        since = (now - timedelta(hours=hours)).replace(minute=0, second=0, microsecond=0)

        buckets: Dict[tuple, Dict[str, list]] = defaultdict(lambda: {"acks": [], "failed": 0, "retries": 0})
        for ack in self.db.scalars(
            select(EventAcknowledgment).where(EventAcknowledgment.acknowledged_at >= since)
        ).all():
            bucket = buckets[(ack.license_key, ack.acknowledged_at.replace(minute=0, second=0, microsecond=0))]
            bucket["acks"].append(ack)
        for record in self.db.scalars(
            select(EventRetryRecord).where(
                EventRetryRecord.attempted_at >= since,
                EventRetryRecord.result != RetryResult.ACKNOWLEDGED,
            )
        ).all():
            buckets[(record.license_key, record.attempted_at.replace(minute=0, second=0, microsecond=0))]["retries"] += 1

        for (license_key, bucket_start), bucket in buckets.items():
            times = [ack.processing_time_ms for ack in bucket["acks"] if ack.processing_time_ms is not None]
            row = self.db.scalar(
                select(PerformanceMetric).where(
                    PerformanceMetric.license_key == license_key,
                    PerformanceMetric.bucket_start == bucket_start,
                )
            )
            if row is None:
                row = PerformanceMetric(license_key=license_key, bucket_start=bucket_start)
                self.db.add(row)
            row.events_acknowledged = sum(1 for ack in bucket["acks"] if ack.status != AckStatus.FAILED)
            row.events_failed = sum(1 for ack in bucket["acks"] if ack.status == AckStatus.FAILED)
            row.avg_processing_time_ms = round(sum(times) / len(times)) if times else 0
            row.max_processing_time_ms = max(times) if times else 0
            row.retry_attempts = bucket["retries"]
        self.db.commit()
        return len(buckets)

    def performance_history(self, license_key: str, hours: int = 24) -> List[PerformanceMetric]:
        since = self.clock() - timedelta(hours=hours)
        return list(
            self.db.scalars(
                select(PerformanceMetric)
                .where(PerformanceMetric.license_key == license_key, PerformanceMetric.bucket_start >= since)
                .order_by(PerformanceMetric.bucket_start)
            ).all()
        )

    def _event_stats(self, license_key: str, since: datetime) -> EventStats:
        row = self.db.execute(
            select(
                func.count(),
                func.count().filter(EventAcknowledgment.status == AckStatus.SUCCESS),
                func.count().filter(EventAcknowledgment.status == AckStatus.FAILED),
                func.avg(EventAcknowledgment.processing_time_ms),
                func.max(EventAcknowledgment.acknowledged_at),
            ).where(
                EventAcknowledgment.license_key == license_key,
                EventAcknowledgment.acknowledged_at >= since,
            )
        ).one()
        last_failure_at = self.db.scalar(
            select(func.max(EventAcknowledgment.acknowledged_at)).where(
                EventAcknowledgment.license_key == license_key,
                EventAcknowledgment.status == AckStatus.FAILED,
                EventAcknowledgment.acknowledged_at >= since,
            )
        )
        retries = self.db.scalar(
            select(func.count()).select_from(EventRetryRecord).where(
                EventRetryRecord.license_key == license_key,
                EventRetryRecord.result != RetryResult.ACKNOWLEDGED,
                EventRetryRecord.attempted_at >= since,
            )
        )
        dead_letters = self.db.scalar(
            select(func.count()).select_from(DeadLetterEntry).where(
                DeadLetterEntry.license_key == license_key,
                DeadLetterEntry.status.in_((DeadLetterStatus.PENDING_REVIEW, DeadLetterStatus.RETRYING)),
            )
        )

        total, successes, failures, avg_ms, last_event_at = row
        return EventStats(
            total=total or 0,
            successes=successes or 0,
            failures=failures or 0,
            avg_processing_time_ms=round(avg_ms) if avg_ms is not None else 0,
            retries=retries or 0,
            dead_letters=dead_letters or 0,
            last_event_at=_as_utc(last_event_at),
            last_failure_at=_as_utc(last_failure_at),
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
