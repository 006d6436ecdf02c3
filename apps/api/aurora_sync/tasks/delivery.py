"""
Delivery tasks: first attempt after commit, and the periodic retry sweep.
"""

from __future__ import annotations

from typing import Any, Dict, Sequence

from kombu.exceptions import OperationalError

from ..core.celery_app import celery_app
from ..core.logging import get_logger
from .utils import task_services

logger = get_logger(__name__)


class CeleryEventDispatcher:
    """Queue one ``deliver_event`` task per committed event."""

    def dispatch(self, event_ids: Sequence[str]) -> None:
        for event_id in event_ids:
            try:
                deliver_event.delay(event_id)
            except OperationalError as e:
                # Delivery rows are committed; the sweep attempts them on its next run
                logger.warning(
                    "deliver_event_enqueue_failed",
                    event_id=event_id,
                    error=str(e),
                )


@celery_app.task(
    bind=True,
    name="aurora_sync.tasks.delivery.deliver_event",
    max_retries=3,
    default_retry_delay=5,
)
def deliver_event(self, event_id: str) -> Dict[str, Any]:
    """Attempt every pending delivery of one committed event."""
    with task_services() as services:
        attempted = services.coordinator.dispatch_event(event_id)

    logger.debug("deliver_event_completed", event_id=event_id, attempted=attempted, task_id=self.request.id)
    return {"event_id": event_id, "attempted": attempted}


@celery_app.task(bind=True, name="aurora_sync.tasks.delivery.process_due_deliveries")
def process_due_deliveries(self) -> Dict[str, Any]:
    """Retry due deliveries and time out unacknowledged ones."""
    with task_services() as services:
        result = services.coordinator.process_due()

    return {
        "attempted": result.attempted,
        "timed_out": result.timed_out,
        "dead_lettered": result.dead_lettered,
    }
