"""
FastAPI dependencies shared by the routers.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .config import settings
from .core.exceptions import AuroraSyncError, ErrorCode
from .core.logging import get_logger
from .db import get_db
from .services.container import Services, build_services
from .tasks.delivery import CeleryEventDispatcher

logger = get_logger(__name__)


def get_services(db: Session = Depends(get_db)) -> Services:
    """Service graph for the request. Committed events are delivered by the worker."""
    return build_services(db, dispatcher=CeleryEventDispatcher())


def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> str:
    """
    Guard for admin endpoints.

    Raises:
        AuroraSyncError: UNAUTHORIZED when no token is configured or it does not match
    """
    expected = settings.admin_api_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("admin_token_rejected", token_present=bool(x_admin_token))
        raise AuroraSyncError("Admin token required", error_code=ErrorCode.UNAUTHORIZED)
    return "admin"
