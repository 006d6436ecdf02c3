"""
Read-only license health and failure pattern analytics.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.exceptions import ErrorCode, NotFoundError
from ..dependencies import get_services, require_admin_token
from ..schemas.api import FailurePatternResponse, LicenseHealthResponse, PerformanceBucketResponse
from ..services.container import Services

router = APIRouter(
    prefix="/api/v1/analytics",
    tags=["Analytics"],
    dependencies=[Depends(require_admin_token)],
    responses={401: {"description": "Missing or invalid admin token"}},
)


@router.get("/health/{license_key}", response_model=LicenseHealthResponse, summary="Latest health score")
def license_health(
    license_key: str,
    refresh: bool = Query(False, description="Recalculate before returning"),
    services: Services = Depends(get_services),
) -> LicenseHealthResponse:
    if refresh:
        metric = services.health.calculate(license_key)
        services.db.commit()
    else:
        metric = services.health.latest(license_key)
    if metric is None:
        raise NotFoundError(
            "No health score calculated for this license yet",
            error_code=ErrorCode.LICENSE_NOT_FOUND,
            details={"license_key": license_key},
        )
    return LicenseHealthResponse.model_validate(metric)


@router.get("/patterns", response_model=List[FailurePatternResponse], summary="Active failure patterns")
def failure_patterns(
    license_key: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> List[FailurePatternResponse]:
    return [FailurePatternResponse.model_validate(p) for p in services.patterns.active_patterns(license_key)]


@router.get("/performance/{license_key}", response_model=List[PerformanceBucketResponse])
def performance_history(
    license_key: str,
    hours: int = Query(24, ge=1, le=168),
    services: Services = Depends(get_services),
) -> List[PerformanceBucketResponse]:
    return [
        PerformanceBucketResponse.model_validate(bucket)
        for bucket in services.health.performance_history(license_key, hours=hours)
    ]
