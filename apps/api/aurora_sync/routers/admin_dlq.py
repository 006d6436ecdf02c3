"""
Admin dead-letter queue management.

Every endpoint requires the ``X-Admin-Token`` header. Entries move from
``pending_review`` to ``resolved`` or ``abandoned``, or back into delivery
through ``requeue``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..core.logging import get_logger
from ..dependencies import get_services, require_admin_token
from ..models.enums import DeadLetterStatus, FailureClassification
from ..schemas.api import (
    DeadLetterCloseRequest,
    DeadLetterListResponse,
    DeadLetterRequeueResponse,
    DeadLetterResponse,
)
from ..services.container import Services

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/admin/dlq",
    tags=["Admin - DLQ Management"],
    dependencies=[Depends(require_admin_token)],
    responses={
        401: {"description": "Missing or invalid admin token"},
        404: {"description": "Dead-letter entry not found"},
        409: {"description": "Entry already closed"},
    },
)


@router.get("", response_model=DeadLetterListResponse, summary="List dead-letter entries")
def list_entries(
    status: Optional[DeadLetterStatus] = Query(None),
    license_key: Optional[str] = Query(None),
    classification: Optional[FailureClassification] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
) -> DeadLetterListResponse:
    entries = services.dead_letters.list_entries(
        status=status,
        license_key=license_key,
        classification=classification,
        limit=limit,
        offset=offset,
    )
    return DeadLetterListResponse(
        items=[DeadLetterResponse.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )


@router.get("/stats", summary="Counts by status and classification")
def dead_letter_stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.dead_letters.stats()


@router.get("/{entry_id}", response_model=DeadLetterResponse)
def get_entry(entry_id: int, services: Services = Depends(get_services)) -> DeadLetterResponse:
    return DeadLetterResponse.model_validate(services.dead_letters.get(entry_id))


@router.post("/{entry_id}/resolve", response_model=DeadLetterResponse)
def resolve_entry(
    entry_id: int,
    body: DeadLetterCloseRequest = Body(default_factory=DeadLetterCloseRequest),
    services: Services = Depends(get_services),
) -> DeadLetterResponse:
    entry = services.dead_letters.resolve(entry_id, body.notes, body.resolver_id)
    return DeadLetterResponse.model_validate(entry)


@router.post("/{entry_id}/abandon", response_model=DeadLetterResponse)
def abandon_entry(
    entry_id: int,
    body: DeadLetterCloseRequest = Body(default_factory=DeadLetterCloseRequest),
    services: Services = Depends(get_services),
) -> DeadLetterResponse:
    entry = services.dead_letters.abandon(entry_id, body.notes, body.resolver_id)
    return DeadLetterResponse.model_validate(entry)


@router.post("/{entry_id}/requeue", response_model=DeadLetterRequeueResponse)
def requeue_entry(entry_id: int, services: Services = Depends(get_services)) -> DeadLetterRequeueResponse:
    """Reset the attempt counter and push again; the entry stays ``retrying`` until acknowledged."""
    delivery = services.dead_letters.requeue(entry_id)
    return DeadLetterRequeueResponse(
        entry_id=entry_id,
        event_id=delivery.event_id,
        machine_id_hash=delivery.machine_id_hash,
        delivery_status=delivery.status,
    )
