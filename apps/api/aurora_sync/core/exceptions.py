"""
Error taxonomy for license state propagation.

Every domain failure raised by the services is an ``AuroraSyncError`` carrying
a stable ``ErrorCode``; the API layer renders it through
``aurora_sync_error_handler``. Failures inside a state-transition transaction
are never wrapped here: they propagate unchanged after rollback.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .logging import get_logger, request_id_ctx

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes returned to terminals and billing callers."""

    # Lookup errors (404)
    LICENSE_NOT_FOUND = "LICENSE_NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    SYNC_NOT_FOUND = "SYNC_NOT_FOUND"
    DEAD_LETTER_NOT_FOUND = "DEAD_LETTER_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"

    # Transition conflicts (409)
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TRANSITION_CONFLICT = "TRANSITION_CONFLICT"
    TERMINAL_QUOTA_EXCEEDED = "TERMINAL_QUOTA_EXCEEDED"
    LICENSE_INACTIVE = "LICENSE_INACTIVE"
    DEAD_LETTER_CLOSED = "DEAD_LETTER_CLOSED"
    DEAD_LETTER_RETRYING = "DEAD_LETTER_RETRYING"

    # Input errors (4xx)
    INVALID_EVENT_PAYLOAD = "INVALID_EVENT_PAYLOAD"
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"
    INVALID_WEBHOOK_PAYLOAD = "INVALID_WEBHOOK_PAYLOAD"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Transport
    CHANNEL_UNAVAILABLE = "CHANNEL_UNAVAILABLE"

    # Deployment
    UNSUPPORTED_DATABASE = "UNSUPPORTED_DATABASE"


ERROR_HTTP_MAPPING: Dict[ErrorCode, int] = {
    ErrorCode.LICENSE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.EVENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SYNC_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.DEAD_LETTER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PLAN_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.TRANSITION_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.TERMINAL_QUOTA_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorCode.LICENSE_INACTIVE: status.HTTP_403_FORBIDDEN,
    ErrorCode.DEAD_LETTER_CLOSED: status.HTTP_409_CONFLICT,
    ErrorCode.DEAD_LETTER_RETRYING: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_EVENT_PAYLOAD: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_WEBHOOK_PAYLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.CHANNEL_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.UNSUPPORTED_DATABASE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ErrorResponse(BaseModel):
    """Error body returned by the API."""
    error_code: ErrorCode = Field(description="Error code")
    message: str = Field(description="Human readable message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Structured context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuroraSyncError(Exception):
    """Base class for domain errors."""

    default_code = ErrorCode.TRANSITION_CONFLICT

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error_code = error_code or self.default_code
        self.message = message
        self.details = details or {}
        self.http_status = ERROR_HTTP_MAPPING.get(self.error_code, 500)
        super().__init__(message)

    def to_error_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details,
            request_id=request_id_ctx.get(),
        )


class NotFoundError(AuroraSyncError):
    default_code = ErrorCode.LICENSE_NOT_FOUND


class LicenseTransitionError(AuroraSyncError):
    """Requested transition is not allowed from the current state."""
    default_code = ErrorCode.INVALID_TRANSITION


class TransitionConflictError(AuroraSyncError):
    """Transition rejected at the state store boundary, nothing was mutated."""
    default_code = ErrorCode.TRANSITION_CONFLICT


class TerminalQuotaExceededError(AuroraSyncError):
    default_code = ErrorCode.TERMINAL_QUOTA_EXCEEDED


class LicenseInactiveError(AuroraSyncError):
    default_code = ErrorCode.LICENSE_INACTIVE


class InvalidEventPayloadError(AuroraSyncError):
    default_code = ErrorCode.INVALID_EVENT_PAYLOAD


class InvalidWebhookSignatureError(AuroraSyncError):
    default_code = ErrorCode.INVALID_WEBHOOK_SIGNATURE


class InvalidWebhookPayloadError(AuroraSyncError):
    default_code = ErrorCode.INVALID_WEBHOOK_PAYLOAD


class ChannelUnavailableError(AuroraSyncError):
    """Push channel transport failure. Always retried by the coordinator."""
    default_code = ErrorCode.CHANNEL_UNAVAILABLE


class UnsupportedDatabaseError(AuroraSyncError):
    """The configured database has no portable upsert (PostgreSQL and SQLite only)."""
    default_code = ErrorCode.UNSUPPORTED_DATABASE


async def aurora_sync_error_handler(request: Request, exc: AuroraSyncError) -> JSONResponse:
    """Render domain errors as JSON."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "request_rejected",
        error_code=exc.error_code.value,
        path=str(request.url.path),
        details=exc.details,
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_error_response().model_dump(mode="json"),
    )
