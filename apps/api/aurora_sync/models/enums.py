"""
Database enumerations for type safety and constraints.
"""

import enum


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names) in SQLEnum columns."""
    return [member.value for member in enum_cls]


class SubscriptionStatus(str, enum.Enum):
    """Billing provider subscription states."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class LicenseStatus(str, enum.Enum):
    """License lifecycle states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    REVOKED = "revoked"


class ChangeType(str, enum.Enum):
    """Audit classification for subscription_changes rows."""
    SUBSCRIPTION_CREATED = "subscription_created"
    PLAN_UPGRADE = "plan_upgrade"
    PLAN_DOWNGRADE = "plan_downgrade"
    CYCLE_CHANGE = "cycle_change"
    CANCELLATION = "cancellation"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    REACTIVATION = "reactivation"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    STATUS_CHANGE = "status_change"
    REVOCATION = "revocation"


class EventType(str, enum.Enum):
    """Outbound event types pushed to desktop terminals."""
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    PLAN_CHANGED = "plan_changed"
    LICENSE_REVOKED = "license_revoked"
    LICENSE_REACTIVATED = "license_reactivated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    TERMINAL_ADDED = "terminal_added"
    TERMINAL_REMOVED = "terminal_removed"
    TERMINAL_RECONNECTED = "terminal_reconnected"
    PRIMARY_CHANGED = "primary_changed"
    DEACTIVATION_BROADCAST = "deactivation_broadcast"
    STATE_SYNC = "state_sync"


class DeliveryStatus(str, enum.Enum):
    """Per-terminal delivery state of one outbound event."""
    PENDING = "pending"
    AWAITING_ACK = "awaiting_ack"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class AckStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RetryResult(str, enum.Enum):
    """Final outcome of one delivery attempt."""
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    TIMEOUT = "timeout"
    OFFLINE = "offline"
    INVALID = "invalid"


class DeadLetterStatus(str, enum.Enum):
    PENDING_REVIEW = "pending_review"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class FailureClassification(str, enum.Enum):
    """Why a delivery ended up in the dead-letter queue."""
    RETRIES_EXHAUSTED = "retries_exhausted"
    INVALID_PAYLOAD = "invalid_payload"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DEACTIVATED = "deactivated"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    INACTIVE = "inactive"


class PerformanceTrend(str, enum.Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class PatternType(str, enum.Enum):
    BURST_FAILURE = "burst_failure"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    PARSING_ERROR = "parsing_error"
    RATE_LIMIT = "rate_limit"


class PatternSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
