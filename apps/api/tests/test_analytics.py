"""
Failure pattern detection and license health scoring.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from aurora_sync.models import EventAcknowledgment
from aurora_sync.models.enums import (
    AckStatus,
    HealthStatus,
    PatternSeverity,
    PatternType,
    PerformanceTrend,
    RetryResult,
)
from aurora_sync.services.failure_pattern_service import (
    detect_bursts,
    detect_message_patterns,
    detect_timeouts,
)
from aurora_sync.services.license_health_service import (
    failure_frequency_score,
    health_status,
    pattern_score,
    performance_score,
    recovery_score,
    trend,
)
from conftest import MACHINE_A

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
KEY = "AUR-PRO-V2-ABCDEFGH-0123ABCD"


def failed_ack(minutes, message=None, license_key=KEY):
    return SimpleNamespace(
        license_key=license_key,
        acknowledged_at=T0 + timedelta(minutes=minutes),
        error_message=message,
    )


def add_acks(db, clock, statuses, processing_time_ms=50, message=None):
    for index, status in enumerate(statuses):
        db.add(
            EventAcknowledgment(
                event_id=f"evt_{index:04d}",
                machine_id_hash=MACHINE_A,
                license_key=KEY,
                status=status,
                error_message=message if status == AckStatus.FAILED else None,
                processing_time_ms=processing_time_ms,
                acknowledged_at=clock.now,
            )
        )
    db.commit()


class TestDetectors:
    @pytest.mark.parametrize(
        "count,severity",
        [(5, PatternSeverity.MEDIUM), (7, PatternSeverity.HIGH), (10, PatternSeverity.CRITICAL)],
    )
    def test_burst_severity(self, count, severity):
        (pattern,) = detect_bursts([failed_ack(minutes=index * 0.25) for index in range(count)])

        assert pattern.pattern_type == PatternType.BURST_FAILURE
        assert pattern.severity == severity
        assert pattern.occurrence_count == count
        assert pattern.pattern_key == f"burst_failure:{KEY}:burst"

    def test_spread_out_failures_are_not_a_burst(self):
        assert detect_bursts([failed_ack(minutes=index * 2) for index in range(5)]) == []

    def test_bursts_are_per_license(self):
        acks = [failed_ack(0, license_key=KEY) for _ in range(3)]
        acks += [failed_ack(0, license_key="AUR-BAS-V2-ZZZZZZZZ-FFFF0000") for _ in range(3)]
        assert detect_bursts(acks) == []

    def test_timeouts_from_retries_and_messages(self):
        retries = [
            SimpleNamespace(license_key=KEY, result=RetryResult.TIMEOUT, attempted_at=T0 + timedelta(minutes=m))
            for m in (0, 4)
        ]
        acks = [failed_ack(8, message="Handler timed out")]

        (pattern,) = detect_timeouts(acks, retries)

        assert pattern.pattern_type == PatternType.TIMEOUT
        assert pattern.occurrence_count == 3
        assert pattern.severity == PatternSeverity.MEDIUM

    def test_message_patterns(self):
        acks = [failed_ack(m, message="Connection refused by license server") for m in range(3)]
        acks += [failed_ack(m, message="Invalid JSON in payload") for m in range(4)]
        acks += [failed_ack(m, message="429 Too Many Requests") for m in range(2)]

        patterns = {p.pattern_type: p for p in detect_message_patterns(acks)}

        assert set(patterns) == {PatternType.NETWORK_ERROR, PatternType.PARSING_ERROR}
        assert patterns[PatternType.NETWORK_ERROR].occurrence_count == 3
        assert patterns[PatternType.PARSING_ERROR].description == "Data parsing/validation errors detected (4 occurrences)"

    def test_rate_limit_is_low_severity(self):
        acks = [failed_ack(m, message="Rate limit exceeded") for m in range(3)]
        (pattern,) = detect_message_patterns(acks)
        assert pattern.pattern_type == PatternType.RATE_LIMIT
        assert pattern.severity == PatternSeverity.LOW


class TestFailurePatternService:
    def test_analyze_persists_and_deactivates(self, db, clock, services):
        add_acks(db, clock, [AckStatus.FAILED] * 5, message="Connection refused")

        stored = services.patterns.analyze(KEY)

        assert {p.pattern_type for p in stored} == {PatternType.BURST_FAILURE, PatternType.NETWORK_ERROR}
        assert len(services.patterns.active_patterns(KEY)) == 2

        # Re-running does not duplicate
        services.patterns.analyze(KEY)
        assert len(services.patterns.active_patterns(KEY)) == 2

        clock.advance(hours=25)
        assert services.patterns.analyze(KEY) == []
        assert services.patterns.active_patterns(KEY) == []


class TestScoring:
    @pytest.mark.parametrize("avg_ms,expected", [(0, 100), (100, 100), (400, 90), (1000, 70), (1500, 50), (2500, 30)])
    def test_performance_score(self, avg_ms, expected):
        assert performance_score(avg_ms) == expected

    @pytest.mark.parametrize(
        "total,failures,expected",
        [(0, 0, 100), (100, 0, 100), (100, 1, 95), (100, 5, 85), (100, 10, 70), (100, 20, 50), (100, 50, 30)],
    )
    def test_failure_frequency_score(self, total, failures, expected):
        assert failure_frequency_score(total, failures) == expected

    @pytest.mark.parametrize("count,expected", [(0, 100), (1, 90), (3, 80), (5, 60), (10, 40), (11, 20)])
    def test_recovery_score(self, count, expected):
        assert recovery_score(count) == expected

    @pytest.mark.parametrize("count,expected", [(0, 100), (1, 85), (2, 70), (4, 50), (5, 30)])
    def test_pattern_score(self, count, expected):
        assert pattern_score(count) == expected

    def test_health_status(self):
        assert health_status(95, None, T0) == HealthStatus.INACTIVE
        assert health_status(95, T0 - timedelta(hours=25), T0) == HealthStatus.INACTIVE
        assert health_status(80, T0, T0) == HealthStatus.HEALTHY
        assert health_status(60, T0, T0) == HealthStatus.DEGRADED
        assert health_status(59, T0, T0) == HealthStatus.CRITICAL

    def test_trend(self):
        assert trend(80, None) == PerformanceTrend.STABLE
        assert trend(85, 80) == PerformanceTrend.IMPROVING
        assert trend(75, 80) == PerformanceTrend.DEGRADING
        assert trend(82, 80) == PerformanceTrend.STABLE


class TestLicenseHealthService:
    def test_healthy_license(self, db, clock, services):
        add_acks(db, clock, [AckStatus.SUCCESS] * 4)

        metric = services.health.calculate(KEY)

        assert metric.health_score == 100
        assert metric.health_status == HealthStatus.HEALTHY
        assert metric.recommendations == ["System operating normally. No action required."]

    def test_license_without_events_is_inactive(self, services):
        metric = services.health.calculate(KEY)
        assert metric.health_status == HealthStatus.INACTIVE
        assert metric.total_events_processed == 0

    def test_failures_degrade_score(self, db, clock, services):
        add_acks(db, clock, [AckStatus.SUCCESS] * 5 + [AckStatus.FAILED] * 5, message="Invalid JSON")
        previous = services.health.calculate(KEY)
        db.commit()

        db.add(
            EventAcknowledgment(
                event_id="evt_late",
                machine_id_hash=MACHINE_A,
                license_key=KEY,
                status=AckStatus.SUCCESS,
                processing_time_ms=50,
                acknowledged_at=clock.now,
            )
        )
        db.commit()
        current = services.health.calculate(KEY)

        # success 50, performance 100, failure frequency 30, recovery 100, patterns 100
        assert previous.health_score == 66
        assert previous.health_status == HealthStatus.DEGRADED
        assert previous.event_success_rate == 50.0
        assert any(r.startswith("Low success rate") for r in previous.recommendations)
        assert any(r.startswith("High failure frequency") for r in previous.recommendations)
        assert current.performance_trend == PerformanceTrend.STABLE

    def test_calculate_all_scores_active_licenses(self, db, clock, services, checkout):
        result = checkout()

        counts = services.health.calculate_all()

        assert counts == {"inactive": 1}
        assert services.health.latest(result.license.license_key).health_status == HealthStatus.INACTIVE

    def test_hourly_aggregation(self, db, clock, services):
        add_acks(db, clock, [AckStatus.SUCCESS] * 3 + [AckStatus.FAILED], processing_time_ms=120)

        assert services.health.aggregate_performance() == 1
        (bucket,) = services.health.performance_history(KEY)

        assert bucket.bucket_start == clock.now.replace(minute=0, second=0, microsecond=0)
        assert bucket.events_acknowledged == 3
        assert bucket.events_failed == 1
        assert bucket.avg_processing_time_ms == 120

        # Rebuilding the same window updates the bucket in place
        assert services.health.aggregate_performance() == 1
        assert len(services.health.performance_history(KEY)) == 1
