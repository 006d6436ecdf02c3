"""
Celery application: post-commit delivery and periodic maintenance.

RabbitMQ is the broker, Redis the result backend. Delivery tasks are routed
to their own queue so a backlog of sweeps never delays first attempts.
"""

from __future__ import annotations

from celery import Celery
from kombu import Exchange, Queue

from ..config import settings

QUEUE_DELIVERY = "delivery"
QUEUE_MAINTENANCE = "maintenance"

celery_app = Celery(
    "aurora_sync",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=[
        "aurora_sync.tasks.delivery",
        "aurora_sync.tasks.maintenance",
        "aurora_sync.tasks.analytics",
    ],
)

sync_exchange = Exchange("aurora_sync", type="direct", durable=True)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=settings.celery_task_eager_propagates,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=4,
    result_expires=3600,
    broker_connection_retry_on_startup=True,
    task_queues=(
        Queue(QUEUE_DELIVERY, exchange=sync_exchange, routing_key=QUEUE_DELIVERY, durable=True),
        Queue(QUEUE_MAINTENANCE, exchange=sync_exchange, routing_key=QUEUE_MAINTENANCE, durable=True),
    ),
    task_default_queue=QUEUE_MAINTENANCE,
    task_default_exchange="aurora_sync",
    task_default_routing_key=QUEUE_MAINTENANCE,
    task_routes={
        "aurora_sync.tasks.delivery.*": {"queue": QUEUE_DELIVERY, "routing_key": QUEUE_DELIVERY},
        "aurora_sync.tasks.maintenance.*": {"queue": QUEUE_MAINTENANCE, "routing_key": QUEUE_MAINTENANCE},
        "aurora_sync.tasks.analytics.*": {"queue": QUEUE_MAINTENANCE, "routing_key": QUEUE_MAINTENANCE},
    },
)

# Beat schedule (seconds)
celery_app.conf.beat_schedule = {
    "process-due-deliveries": {
        "task": "aurora_sync.tasks.delivery.process_due_deliveries",
        "schedule": 15.0,
        "options": {"queue": QUEUE_DELIVERY, "expires": 15},
    },
    "detect-stale-sessions": {
        "task": "aurora_sync.tasks.maintenance.detect_stale_sessions",
        "schedule": 60.0,
        "options": {"queue": QUEUE_MAINTENANCE, "expires": 60},
    },
    "expire-stale-syncs": {
        "task": "aurora_sync.tasks.maintenance.expire_stale_syncs",
        "schedule": 300.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "expire-grace-periods": {
        "task": "aurora_sync.tasks.maintenance.expire_grace_periods",
        "schedule": 3600.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "purge-expired-events": {
        "task": "aurora_sync.tasks.maintenance.purge_expired_events",
        "schedule": 3600.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "purge-dead-letters": {
        "task": "aurora_sync.tasks.maintenance.purge_dead_letters",
        "schedule": 86400.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "purge-idempotency-records": {
        "task": "aurora_sync.tasks.maintenance.purge_idempotency_records",
        "schedule": 86400.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "compute-license-health": {
        "task": "aurora_sync.tasks.analytics.compute_license_health",
        "schedule": 3600.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "analyze-failure-patterns": {
        "task": "aurora_sync.tasks.analytics.analyze_failure_patterns",
        "schedule": 3600.0,
        "options": {"queue": QUEUE_MAINTENANCE},
    },
}
