"""
Request and response bodies of the acknowledgment, subscription, dead-letter
and analytics endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.enums import (
    AckStatus,
    BillingCycle,
    DeadLetterStatus,
    DeliveryStatus,
    FailureClassification,
    HealthStatus,
    LicenseStatus,
    PatternSeverity,
    PatternType,
    PerformanceTrend,
    SubscriptionStatus,
)


class EventAckRequest(BaseModel):
    event_id: str = Field(..., max_length=64)
    machine_id_hash: str = Field(..., min_length=8, max_length=128)
    status: AckStatus = AckStatus.SUCCESS
    error_message: Optional[str] = Field(None, max_length=2000)
    processing_time_ms: Optional[int] = Field(None, ge=0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_id": "evt_3f1c0d9e2b7a4c6f8e5d1a2b3c4d5e6f",
                "machine_id_hash": "5e884898da28047151d0e56f8dc62927",
                "status": "success",
                "processing_time_ms": 42,
            }
        }
    )


class EventAckResponse(BaseModel):
    event_id: str
    machine_id_hash: str
    status: AckStatus
    duplicate: bool
    delivery_status: Optional[DeliveryStatus] = None
    acknowledged_at: datetime


class ReplayResponse(BaseModel):
    license_key: str
    since: datetime
    window_start: datetime
    replay_gap: bool = Field(description="True when events before the retention window may be missing")
    events: List[Dict[str, Any]]


class CancelSubscriptionRequest(BaseModel):
    cancel_immediately: bool = False
    reason: str = Field("user_cancellation", max_length=255)


class ReactivateSubscriptionRequest(BaseModel):
    reason: str = Field("user_reactivation", max_length=255)


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(..., max_length=50)
    billing_cycle: Optional[BillingCycle] = None
    reason: str = Field("plan_change", max_length=255)


class RevokeLicenseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    plan_id: str
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None
    past_due_since: Optional[datetime] = None


class LicenseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    license_key: str
    plan_id: str
    tier_code: str
    status: LicenseStatus
    is_active: bool
    max_terminals: int
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None


class TransitionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None
    license: LicenseResponse
    previous_license_key: Optional[str] = None
    event_ids: List[str] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    received: bool = True
    status: str
    event_ids: List[str] = Field(default_factory=list)


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: str
    event_type: str
    license_key: str
    machine_id_hash: str
    payload: Dict[str, Any]
    retry_count: int
    last_error: Optional[str] = None
    retry_history: List[Dict[str, Any]] = Field(default_factory=list)
    failure_classification: FailureClassification
    status: DeadLetterStatus
    first_failed_at: datetime
    last_failed_at: datetime
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None


class DeadLetterListResponse(BaseModel):
    items: List[DeadLetterResponse]
    limit: int
    offset: int


class DeadLetterCloseRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
    resolver_id: str = Field("admin", max_length=100)


class DeadLetterRequeueResponse(BaseModel):
    entry_id: int
    event_id: str
    machine_id_hash: str
    delivery_status: DeliveryStatus


class LicenseHealthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    license_key: str
    health_score: int
    health_status: HealthStatus
    event_success_rate: float
    avg_processing_time_ms: int
    total_events_processed: int
    total_failures: int
    total_retries: int
    total_dlq_events: int
    last_event_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    performance_trend: PerformanceTrend
    failure_patterns: List[str]
    recommendations: List[str]
    calculated_at: datetime


class FailurePatternResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pattern_key: str
    pattern_type: PatternType
    license_key: Optional[str] = None
    description: str
    severity: PatternSeverity
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    is_active: bool
    details: Dict[str, Any]


class PerformanceBucketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bucket_start: datetime
    events_acknowledged: int
    events_failed: int
    avg_processing_time_ms: int
    max_processing_time_ms: int
    retry_attempts: int
