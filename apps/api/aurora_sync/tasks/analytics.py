"""
Hourly analytics: failure patterns first, then health scores that count them.
"""

from __future__ import annotations

from typing import Any, Dict

from ..core.celery_app import celery_app
from .utils import task_services


@celery_app.task(bind=True, name="aurora_sync.tasks.analytics.analyze_failure_patterns")
def analyze_failure_patterns(self) -> Dict[str, Any]:
    with task_services() as services:
        patterns = services.patterns.analyze()
        return {"active_patterns": len(patterns)}


@celery_app.task(bind=True, name="aurora_sync.tasks.analytics.compute_license_health")
def compute_license_health(self) -> Dict[str, Any]:
    with task_services() as services:
        buckets = services.health.aggregate_performance()
        by_status = services.health.calculate_all()
        return {"by_status": by_status, "performance_buckets": buckets}
