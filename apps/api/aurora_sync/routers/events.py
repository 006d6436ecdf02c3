"""
Terminal-facing event endpoints: acknowledgments, replay after reconnect,
and multi-terminal state sync.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_services
from ..schemas.api import EventAckRequest, EventAckResponse, ReplayResponse
from ..schemas.terminals import StateSyncAckRequest, StateSyncRequest, StateSyncResponse
from ..services.container import Services

router = APIRouter(
    prefix="/api/v1/events",
    tags=["Events"],
    responses={404: {"description": "Event, session or sync not found"}},
)


@router.post("/ack", response_model=EventAckResponse, summary="Acknowledge a delivered event")
def acknowledge_event(
    body: EventAckRequest,
    services: Services = Depends(get_services),
) -> EventAckResponse:
    """Idempotent per (event, terminal). A repeat returns the stored acknowledgment."""
    result = services.coordinator.acknowledge(
        body.event_id,
        body.machine_id_hash,
        body.status,
        error_message=body.error_message,
        processing_time_ms=body.processing_time_ms,
    )
    ack = result.acknowledgment
    return EventAckResponse(
        event_id=ack.event_id,
        machine_id_hash=ack.machine_id_hash,
        status=ack.status,
        duplicate=result.duplicate,
        delivery_status=result.delivery_status,
        acknowledged_at=ack.acknowledged_at,
    )


@router.get("/replay/{license_key}", response_model=ReplayResponse, summary="Events since a point in time")
def replay_events(
    license_key: str,
    since: datetime = Query(..., description="Inclusive lower bound, ISO-8601"),
    services: Services = Depends(get_services),
) -> ReplayResponse:
    result = services.publisher.log.replay_since(license_key, since)
    return ReplayResponse(
        license_key=result.license_key,
        since=result.since,
        window_start=result.window_start,
        replay_gap=result.replay_gap,
        events=result.envelopes(),
    )


@router.post("/sync", response_model=StateSyncResponse, summary="Start a state sync across terminals")
def start_state_sync(
    body: StateSyncRequest,
    services: Services = Depends(get_services),
) -> StateSyncResponse:
    sync = services.coordination.synchronize_state(
        body.license_key,
        body.sync_type,
        body.source_machine_id_hash,
        body.data,
        targets=body.targets,
    )
    return StateSyncResponse.model_validate(sync)


@router.post("/sync/{sync_id}/ack", response_model=StateSyncResponse)
def acknowledge_state_sync(
    sync_id: str,
    body: StateSyncAckRequest,
    services: Services = Depends(get_services),
) -> StateSyncResponse:
    sync = services.coordination.acknowledge_sync(sync_id, body.machine_id_hash)
    return StateSyncResponse.model_validate(sync)


@router.get("/sync/{sync_id}", response_model=StateSyncResponse)
def get_state_sync(sync_id: str, services: Services = Depends(get_services)) -> StateSyncResponse:
    return StateSyncResponse.model_validate(services.coordination.get_sync(sync_id))
