"""License sync schema: subscriptions, licenses, event log, delivery, terminals, analytics

Revision ID: 0001_license_sync_schema
Revises:
Create Date: 2026-02-16
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_license_sync_schema"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


ENUMS = {
    "subscription_status_enum": ("active", "trialing", "past_due", "cancelled", "paused"),
    "billing_cycle_enum": ("monthly", "annual"),
    "license_status_enum": ("trialing", "active", "past_due", "cancelled", "revoked"),
    "change_type_enum": (
        "subscription_created", "plan_upgrade", "plan_downgrade", "cycle_change",
        "cancellation", "cancellation_scheduled", "reactivation", "payment_failed",
        "payment_recovered", "status_change", "revocation",
    ),
    "delivery_status_enum": ("pending", "awaiting_ack", "delivered", "dead_lettered"),
    "ack_status_enum": ("success", "failed", "skipped"),
    "retry_result_enum": ("acknowledged", "failed", "timeout", "offline", "invalid"),
    "dead_letter_status_enum": ("pending_review", "retrying", "resolved", "abandoned"),
    "failure_classification_enum": ("retries_exhausted", "invalid_payload"),
    "connection_status_enum": ("connected", "disconnected", "deactivated"),
    "sync_status_enum": ("pending", "in_progress", "completed", "failed"),
    "health_status_enum": ("healthy", "degraded", "critical", "inactive"),
    "performance_trend_enum": ("improving", "stable", "degrading"),
    "pattern_type_enum": ("burst_failure", "timeout", "network_error", "parsing_error", "rate_limit"),
    "pattern_severity_enum": ("low", "medium", "high", "critical"),
}


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False, comment="Owning customer identifier"),
        sa.Column("external_subscription_id", sa.String(255), nullable=True, comment="Billing provider subscription id"),
        sa.Column("external_customer_id", sa.String(255), nullable=True, comment="Billing provider customer id"),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column("billing_cycle", _enum("billing_cycle_enum", *ENUMS["billing_cycle_enum"]), nullable=False),
        sa.Column("status", _enum("subscription_status_enum", *ENUMS["subscription_status_enum"]), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("past_due_since", sa.DateTime(timezone=True), nullable=True, comment="Start of the payment grace period"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
        sa.UniqueConstraint("external_subscription_id", name="uq_subscriptions_external_subscription_id"),
    )
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_index("ix_subscriptions_external_customer_id", "subscriptions", ["external_customer_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("idx_subscriptions_customer_status", "subscriptions", ["customer_id", "status"])

    op.create_table(
        "licenses",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False, comment="AUR-{tier}-V2-{random}-{signature}"),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.BigInteger(), nullable=True),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column("tier_code", sa.String(8), nullable=False),
        sa.Column("status", _enum("license_status_enum", *ENUMS["license_status_enum"]), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_terminals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_licenses"),
        sa.ForeignKeyConstraint(
            ["subscription_id"], ["subscriptions.id"],
            name="fk_licenses_subscription_id_subscriptions", ondelete="SET NULL",
        ),
        sa.CheckConstraint("max_terminals > 0", name="ck_licenses_max_terminals_positive"),
    )
    op.create_index("ix_licenses_license_key", "licenses", ["license_key"], unique=True)
    op.create_index("ix_licenses_customer_id", "licenses", ["customer_id"])
    op.create_index("ix_licenses_subscription_id", "licenses", ["subscription_id"])
    op.create_index("ix_licenses_status", "licenses", ["status"])

    op.create_table(
        "subscription_changes",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.BigInteger(), nullable=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("change_type", _enum("change_type_enum", *ENUMS["change_type_enum"]), nullable=False),
        sa.Column("previous_plan", sa.String(50), nullable=True),
        sa.Column("new_plan", sa.String(50), nullable=True),
        sa.Column("previous_billing_cycle", sa.String(20), nullable=True),
        sa.Column("new_billing_cycle", sa.String(20), nullable=True),
        sa.Column("previous_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("new_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("proration_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("previous_license_key", sa.String(64), nullable=True),
        sa.Column("new_license_key", sa.String(64), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscription_changes"),
        sa.ForeignKeyConstraint(
            ["subscription_id"], ["subscriptions.id"],
            name="fk_subscription_changes_subscription_id_subscriptions", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_subscription_changes_subscription_id", "subscription_changes", ["subscription_id"])
    op.create_index("ix_subscription_changes_customer_id", "subscription_changes", ["customer_id"])
    op.create_index(
        "idx_subscription_changes_customer_type", "subscription_changes", ["customer_id", "change_type"]
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("external_event_id", sa.String(255), nullable=False, comment="Billing provider event id"),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_webhook_events"),
        sa.UniqueConstraint("external_event_id", name="uq_webhook_events_external_event_id"),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])

    # Event log, delivery and dead-letter queue
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False, comment="Random identifier, never derived from content"),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_subscription_events"),
        sa.UniqueConstraint("event_id", name="uq_subscription_events_event_id"),
    )
    op.create_index("ix_subscription_events_event_type", "subscription_events", ["event_type"])
    op.create_index("ix_subscription_events_expires_at", "subscription_events", ["expires_at"])
    op.create_index(
        "idx_subscription_events_license_created", "subscription_events", ["license_key", "created_at"]
    )

    op.create_table(
        "event_deliveries",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("machine_id_hash", sa.String(128), nullable=False),
        sa.Column("status", _enum("delivery_status_enum", *ENUMS["delivery_status_enum"]), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0", comment="Failed attempts so far"),
        sa.Column(
            "next_attempt_at", sa.DateTime(timezone=True), nullable=True,
            comment="Next push (pending) or ack deadline (awaiting_ack)",
        ),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_event_deliveries"),
        sa.ForeignKeyConstraint(
            ["event_id"], ["subscription_events.event_id"],
            name="fk_event_deliveries_event_id_subscription_events", ondelete="CASCADE",
        ),
        sa.UniqueConstraint("event_id", "machine_id_hash", name="uq_event_deliveries_event_machine"),
    )
    op.create_index("ix_event_deliveries_license_key", "event_deliveries", ["license_key"])
    op.create_index("idx_event_deliveries_due", "event_deliveries", ["status", "next_attempt_at"])

    op.create_table(
        "event_acknowledgments",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("machine_id_hash", sa.String(128), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("status", _enum("ack_status_enum", *ENUMS["ack_status_enum"]), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_event_acknowledgments"),
        sa.UniqueConstraint("event_id", "machine_id_hash", name="uq_event_acknowledgments_event_machine"),
    )
    op.create_index(
        "idx_event_acknowledgments_license_time", "event_acknowledgments", ["license_key", "acknowledged_at"]
    )

    op.create_table(
        "event_retry_history",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("machine_id_hash", sa.String(128), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("result", _enum("retry_result_enum", *ENUMS["retry_result_enum"]), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "next_retry_at", sa.DateTime(timezone=True), nullable=True,
            comment="Null when the attempt exhausted the budget",
        ),
        sa.Column("backoff_delay_ms", sa.Integer(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_event_retry_history"),
    )
    op.create_index(
        "idx_event_retry_history_event_machine", "event_retry_history", ["event_id", "machine_id_hash"]
    )
    op.create_index(
        "idx_event_retry_history_license_time", "event_retry_history", ["license_key", "attempted_at"]
    )

    op.create_table(
        "dead_letter_queue",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("machine_id_hash", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "retry_history", postgresql.JSONB(), nullable=False,
            server_default=sa.text("'[]'::jsonb"), comment="Attempts that led here, oldest first",
        ),
        sa.Column(
            "failure_classification",
            _enum("failure_classification_enum", *ENUMS["failure_classification_enum"]),
            nullable=False,
        ),
        sa.Column("status", _enum("dead_letter_status_enum", *ENUMS["dead_letter_status_enum"]), nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_by", sa.String(100), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_dead_letter_queue"),
        sa.UniqueConstraint("event_id", "machine_id_hash", name="uq_dead_letter_queue_event_machine"),
    )
    op.create_index("ix_dead_letter_queue_license_key", "dead_letter_queue", ["license_key"])
    op.create_index("idx_dead_letter_queue_status", "dead_letter_queue", ["status", "created_at"])

    # Terminals
    op.create_table(
        "terminal_sessions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("machine_id_hash", sa.String(128), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("terminal_name", sa.String(255), nullable=True),
        sa.Column("hostname", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("app_version", sa.String(50), nullable=True),
        sa.Column("os_info", sa.String(255), nullable=True),
        sa.Column(
            "connection_status", _enum("connection_status_enum", *ENUMS["connection_status_enum"]), nullable=False
        ),
        sa.Column("first_connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_terminal_sessions"),
        sa.UniqueConstraint("machine_id_hash", "license_key", name="uq_terminal_sessions_machine_license"),
    )
    op.create_index(
        "idx_terminal_sessions_license_status", "terminal_sessions", ["license_key", "connection_status"]
    )
    op.create_index(
        "idx_terminal_sessions_heartbeat", "terminal_sessions", ["connection_status", "last_heartbeat_at"]
    )

    op.create_table(
        "terminal_state_sync",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("sync_id", sa.String(64), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("sync_type", sa.String(50), nullable=False),
        sa.Column("source_machine_id_hash", sa.String(128), nullable=True),
        sa.Column(
            "target_machine_id_hashes", postgresql.JSONB(), nullable=True,
            comment="Explicit targets; null means all terminals",
        ),
        sa.Column(
            "expected_acknowledgers", postgresql.JSONB(), nullable=False,
            server_default=sa.text("'[]'::jsonb"), comment="Targets resolved when the sync was created",
        ),
        sa.Column("acknowledged_by", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", _enum("sync_status_enum", *ENUMS["sync_status_enum"]), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_terminal_state_sync"),
        sa.UniqueConstraint("sync_id", name="uq_terminal_state_sync_sync_id"),
    )
    op.create_index("idx_terminal_state_sync_license_status", "terminal_state_sync", ["license_key", "status"])

    op.create_table(
        "terminal_coordination_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=True),
        sa.Column("source_machine_id_hash", sa.String(128), nullable=True),
        sa.Column(
            "target_machine_id_hashes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "delivery_status", postgresql.JSONB(), nullable=False,
            server_default=sa.text("'{}'::jsonb"), comment="machine_id_hash -> pending | acknowledged | failed",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_terminal_coordination_events"),
    )
    op.create_index("ix_terminal_coordination_events_event_id", "terminal_coordination_events", ["event_id"])
    op.create_index(
        "idx_terminal_coordination_events_license", "terminal_coordination_events", ["license_key", "created_at"]
    )

    # Analytics
    op.create_table(
        "license_health_metrics",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("health_score", sa.Integer(), nullable=False),
        sa.Column("health_status", _enum("health_status_enum", *ENUMS["health_status_enum"]), nullable=False),
        sa.Column("event_success_rate", sa.Float(), nullable=False, server_default="100"),
        sa.Column("avg_processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_events_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_dlq_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "performance_trend", _enum("performance_trend_enum", *ENUMS["performance_trend_enum"]), nullable=False
        ),
        sa.Column("failure_patterns", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("recommendations", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_license_health_metrics"),
    )
    op.create_index(
        "idx_license_health_metrics_license_time", "license_health_metrics", ["license_key", "calculated_at"]
    )

    op.create_table(
        "failure_patterns",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("pattern_key", sa.String(255), nullable=False, comment="pattern_type:license_key:signature"),
        sa.Column("pattern_type", _enum("pattern_type_enum", *ENUMS["pattern_type_enum"]), nullable=False),
        sa.Column("license_key", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("severity", _enum("pattern_severity_enum", *ENUMS["pattern_severity_enum"]), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_failure_patterns"),
        sa.UniqueConstraint("pattern_key", name="uq_failure_patterns_pattern_key"),
    )
    op.create_index("ix_failure_patterns_license_key", "failure_patterns", ["license_key"])

    op.create_table(
        "performance_metrics",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("license_key", sa.String(64), nullable=False),
        sa.Column("bucket_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("events_acknowledged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_attempts", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_performance_metrics"),
    )
    op.create_index(
        "uq_performance_metrics_license_bucket", "performance_metrics", ["license_key", "bucket_start"], unique=True
    )


def downgrade() -> None:
    for table in (
        "performance_metrics",
        "failure_patterns",
        "license_health_metrics",
        "terminal_coordination_events",
        "terminal_state_sync",
        "terminal_sessions",
        "dead_letter_queue",
        "event_retry_history",
        "event_acknowledgments",
        "event_deliveries",
        "subscription_events",
        "webhook_events",
        "subscription_changes",
        "licenses",
        "subscriptions",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
