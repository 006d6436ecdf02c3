"""
Failure pattern detection over terminal acknowledgments and delivery attempts.

Detectors:
    burst_failure   >= 5 failed acks of one license within 5 minutes
    timeout         >= 3 timeouts of one license within 10 minutes
    network_error   >= 3 identical failed-ack messages naming a network fault
    parsing_error   >= 3 identical failed-ack messages naming a parse fault
    rate_limit      >= 3 identical failed-ack messages naming a rate limit

Patterns are upserted by ``pattern_key``; a pattern that is not detected
again in a later run for the same license is deactivated.
"""

from __future__ import annotations

import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.logging import get_logger
from ..models.analytics import FailurePattern
from ..models.enums import AckStatus, PatternSeverity, PatternType, RetryResult
from ..models.event_acknowledgment import EventAcknowledgment
from ..models.event_retry import EventRetryRecord

logger = get_logger(__name__)

BURST_COUNT = 5
BURST_WINDOW = timedelta(minutes=5)
TIMEOUT_COUNT = 3
TIMEOUT_WINDOW = timedelta(minutes=10)
MIN_OCCURRENCES = 3

KEYWORDS: Dict[PatternType, Tuple[str, ...]] = {
    PatternType.NETWORK_ERROR: ("network", "connection refused", "econnrefused", "dns", "unreachable"),
    PatternType.PARSING_ERROR: ("parse", "invalid", "validation", "json", "syntax"),
    PatternType.RATE_LIMIT: ("rate limit", "too many requests", "429", "quota exceeded"),
}
TIMEOUT_KEYWORDS = ("timeout", "timed out")

_DESCRIPTIONS = {
    PatternType.NETWORK_ERROR: "Network connectivity issues detected ({count} occurrences)",
    PatternType.PARSING_ERROR: "Data parsing/validation errors detected ({count} occurrences)",
    PatternType.RATE_LIMIT: "Rate limiting detected ({count} occurrences)",
}


@dataclass
class DetectedPattern:
    pattern_type: PatternType
    license_key: str
    signature: str
    description: str
    severity: PatternSeverity
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def pattern_key(self) -> str:
        return f"{self.pattern_type.value}:{self.license_key}:{self.signature}"


def _message_signature(message: str) -> str:
    return hashlib.sha1(message.encode("utf-8")).hexdigest()[:16]


def _densest_window(timestamps: Sequence[datetime], window: timedelta) -> Tuple[int, Optional[datetime]]:
    """Largest number of timestamps inside any window starting at one of them."""
    ordered = sorted(timestamps)
    best, best_start = 0, None
    end = 0
    for start in range(len(ordered)):
        while end < len(ordered) and ordered[end] - ordered[start] <= window:
            end += 1
        if end - start > best:
            best, best_start = end - start, ordered[start]
    return best, best_start


def detect_bursts(failures: Iterable[EventAcknowledgment]) -> List[DetectedPattern]:
    by_license: Dict[str, List[datetime]] = defaultdict(list)
    for ack in failures:
        by_license[ack.license_key].append(ack.acknowledged_at)

    patterns = []
    for license_key, timestamps in by_license.items():
        count, start = _densest_window(timestamps, BURST_WINDOW)
        if count < BURST_COUNT:
            continue
        if count >= 10:
            severity = PatternSeverity.CRITICAL
        elif count >= 7:
            severity = PatternSeverity.HIGH
        else:
            severity = PatternSeverity.MEDIUM
        patterns.append(
            DetectedPattern(
                pattern_type=PatternType.BURST_FAILURE,
                license_key=license_key,
                signature="burst",
                description=f"{count} failures detected in 5 minutes",
                severity=severity,
                occurrence_count=count,
                first_seen_at=min(timestamps),
                last_seen_at=max(timestamps),
                details={"window_start": start.isoformat(), "window_end": (start + BURST_WINDOW).isoformat()},
            )
        )
    return patterns


def detect_timeouts(
    failures: Iterable[EventAcknowledgment],
    retries: Iterable[EventRetryRecord],
) -> List[DetectedPattern]:
    by_license: Dict[str, List[datetime]] = defaultdict(list)
    for ack in failures:
        message = (ack.error_message or "").lower()
        if any(keyword in message for keyword in TIMEOUT_KEYWORDS):
            by_license[ack.license_key].append(ack.acknowledged_at)
    for record in retries:
        if record.result == RetryResult.TIMEOUT:
            by_license[record.license_key].append(record.attempted_at)

    patterns = []
    for license_key, timestamps in by_license.items():
        count, start = _densest_window(timestamps, TIMEOUT_WINDOW)
        if count < TIMEOUT_COUNT:
            continue
        patterns.append(
            DetectedPattern(
                pattern_type=PatternType.TIMEOUT,
                license_key=license_key,
                signature="timeout",
                description=f"Repeated timeout errors detected ({count} occurrences)",
                severity=PatternSeverity.HIGH if count >= 10 else PatternSeverity.MEDIUM,
                occurrence_count=count,
                first_seen_at=min(timestamps),
                last_seen_at=max(timestamps),
                details={"window_start": start.isoformat(), "total_timeouts": len(timestamps)},
            )
        )
    return patterns


def detect_message_patterns(failures: Iterable[EventAcknowledgment]) -> List[DetectedPattern]:
    grouped: Dict[Tuple[str, str], List[datetime]] = defaultdict(list)
    for ack in failures:
        if ack.error_message:
            grouped[(ack.license_key, ack.error_message)].append(ack.acknowledged_at)

    patterns = []
    for (license_key, message), timestamps in grouped.items():
        count = len(timestamps)
        if count < MIN_OCCURRENCES:
            continue
        lowered = message.lower()
        for pattern_type, keywords in KEYWORDS.items():
            if not any(keyword in lowered for keyword in keywords):
                continue
            if pattern_type == PatternType.RATE_LIMIT:
                severity = PatternSeverity.LOW
            elif pattern_type == PatternType.NETWORK_ERROR and count >= 10:
                severity = PatternSeverity.HIGH
            else:
                severity = PatternSeverity.MEDIUM
            patterns.append(
                DetectedPattern(
                    pattern_type=pattern_type,
                    license_key=license_key,
                    signature=_message_signature(message),
                    description=_DESCRIPTIONS[pattern_type].format(count=count),
                    severity=severity,
                    occurrence_count=count,
                    first_seen_at=min(timestamps),
                    last_seen_at=max(timestamps),
                    details={"error_message": message},
                )
            )
    return patterns


class FailurePatternService:
    """Detect, persist and list failure patterns."""

    def __init__(self, db: Session, clock: Clock = utc_now, window_hours: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.window = timedelta(hours=window_hours or settings.pattern_window_hours)

    def analyze(self, license_key: Optional[str] = None) -> List[FailurePattern]:
        """Run every detector over the window and upsert the results."""
        now = self.clock()
        since = now - self.window

        ack_stmt = select(EventAcknowledgment).where(
            EventAcknowledgment.status == AckStatus.FAILED,
            EventAcknowledgment.acknowledged_at >= since,
        )
        retry_stmt = select(EventRetryRecord).where(
            EventRetryRecord.result == RetryResult.TIMEOUT,
            EventRetryRecord.attempted_at >= since,
        )
        if license_key is not None:
            ack_stmt = ack_stmt.where(EventAcknowledgment.license_key == license_key)
            retry_stmt = retry_stmt.where(EventRetryRecord.license_key == license_key)

        failures = list(self.db.scalars(ack_stmt).all())
        retries = list(self.db.scalars(retry_stmt).all())

        detected = detect_bursts(failures) + detect_timeouts(failures, retries) + detect_message_patterns(failures)
        stored = [self._upsert(pattern, now) for pattern in detected]

        self._deactivate_missing({pattern.pattern_key for pattern in detected}, license_key)
        self.db.commit()

        if detected:
            logger.info(
                "failure_patterns_detected",
                license_key=license_key,
                count=len(detected),
                types=sorted({pattern.pattern_type.value for pattern in detected}),
            )
        return stored

    def active_patterns(self, license_key: Optional[str] = None) -> List[FailurePattern]:
        stmt = select(FailurePattern).where(FailurePattern.is_active.is_(True))
        if license_key is not None:
            stmt = stmt.where(FailurePattern.license_key == license_key)
        return list(self.db.scalars(stmt.order_by(FailurePattern.last_seen_at.desc())).all())

    def _upsert(self, pattern: DetectedPattern, now: datetime) -> FailurePattern:
        record = self.db.scalar(select(FailurePattern).where(FailurePattern.pattern_key == pattern.pattern_key))
        if record is None:
            record = FailurePattern(
                pattern_key=pattern.pattern_key,
                pattern_type=pattern.pattern_type,
                license_key=pattern.license_key,
                first_seen_at=pattern.first_seen_at,
            )
            self.db.add(record)

        record.description = pattern.description
        record.severity = pattern.severity
        record.occurrence_count = pattern.occurrence_count
        record.last_seen_at = pattern.last_seen_at
        record.is_active = True
        record.details = {**pattern.details, "detected_at": now.isoformat()}
        self.db.flush()
        return record

    def _deactivate_missing(self, detected_keys: set, license_key: Optional[str]) -> None:
        stmt = select(FailurePattern).where(FailurePattern.is_active.is_(True))
        if license_key is not None:
            stmt = stmt.where(FailurePattern.license_key == license_key)
        for record in self.db.scalars(stmt).all():
            if record.pattern_key not in detected_keys:
                record.is_active = False
