"""
Periodic maintenance: stale sessions, grace periods, sync timeouts and
garbage collection. Every task is idempotent and safe to run concurrently
with itself.
"""

from __future__ import annotations

from typing import Any, Dict

from ..core.celery_app import celery_app
from ..core.logging import get_logger
from ..services.idempotency_ledger import IdempotencyLedger
from .utils import task_services

logger = get_logger(__name__)


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.detect_stale_sessions")
def detect_stale_sessions(self) -> Dict[str, Any]:
    with task_services() as services:
        stale = services.registry.detect_stale()
        return {"disconnected": len(stale)}


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.expire_grace_periods")
def expire_grace_periods(self) -> Dict[str, Any]:
    """Deactivate subscriptions whose payment or cancellation grace has run out."""
    with task_services() as services:
        return {"deactivated": services.state.expire_grace_periods()}


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.expire_stale_syncs")
def expire_stale_syncs(self) -> Dict[str, Any]:
    with task_services() as services:
        return {"failed": services.coordination.expire_stale_syncs()}


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.purge_expired_events")
def purge_expired_events(self) -> Dict[str, Any]:
    with task_services() as services:
        return {"deleted": services.publisher.log.purge_expired()}


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.purge_dead_letters")
def purge_dead_letters(self) -> Dict[str, Any]:
    with task_services() as services:
        return {"deleted": services.dead_letters.purge_closed()}


@celery_app.task(bind=True, name="aurora_sync.tasks.maintenance.purge_idempotency_records")
def purge_idempotency_records(self) -> Dict[str, Any]:
    with task_services() as services:
        return {"deleted": IdempotencyLedger.purge_older_than(services.db)}
