"""
Prometheus metrics for webhook ingestion, license transitions and event delivery.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Histogram buckets: seconds
_webhook_latency_buckets = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)

# Terminal processing buckets: milliseconds reported in acknowledgments
_processing_ms_buckets = (10, 50, 100, 250, 500, 1000, 2000, 5000, 10000)

webhook_events_total = Counter(
    name="billing_webhook_events_total",
    documentation="Billing webhooks received by type and outcome",
    labelnames=("event_type", "outcome"),
)

webhook_processing_seconds = Histogram(
    name="billing_webhook_processing_seconds",
    documentation="Time to apply a billing webhook",
    labelnames=("event_type",),
    buckets=_webhook_latency_buckets,
)

license_transitions_total = Counter(
    name="license_transitions_total",
    documentation="Committed license state transitions",
    labelnames=("transition", "to_status"),
)

events_published_total = Counter(
    name="subscription_events_published_total",
    documentation="Outbound events appended to the event log",
    labelnames=("event_type",),
)

delivery_attempts_total = Counter(
    name="event_delivery_attempts_total",
    documentation="Push attempts by result",
    labelnames=("result",),
)

dead_letters_total = Counter(
    name="event_dead_letters_total",
    documentation="Deliveries moved to the dead-letter queue",
    labelnames=("classification",),
)

acknowledgments_total = Counter(
    name="event_acknowledgments_total",
    documentation="Terminal acknowledgments by status",
    labelnames=("status", "duplicate"),
)

ack_processing_ms = Histogram(
    name="event_ack_processing_ms",
    documentation="Processing time reported by terminals",
    buckets=_processing_ms_buckets,
)

terminal_registrations_total = Counter(
    name="terminal_registrations_total",
    documentation="Terminal registrations by kind",
    labelnames=("kind",),
)

stale_sessions_total = Counter(
    name="terminal_stale_sessions_total",
    documentation="Sessions force-disconnected by the stale sweep",
)

licenses_by_health_status = Gauge(
    name="licenses_by_health_status",
    documentation="Licenses per health status at the last health calculation",
    labelnames=("health_status",),
)
