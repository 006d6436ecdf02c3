"""
Terminal activation, liveness and the per-terminal event stream.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

import redis.asyncio as redis
from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from ..core.logging import get_logger
from ..core.push_channel import PRESENCE_TTL_SECONDS, channel_name, presence_key
from ..db import get_redis
from ..dependencies import get_services, require_admin_token
from ..models.enums import ConnectionStatus
from ..schemas.terminals import (
    TerminalActivateRequest,
    TerminalActivateResponse,
    TerminalBroadcastRequest,
    TerminalBroadcastResponse,
    TerminalDisconnectRequest,
    TerminalHeartbeatRequest,
    TerminalInfo,
    TerminalSessionResponse,
)
from ..services.container import Services

logger = get_logger(__name__)

KEEPALIVE_SECONDS = 30.0

router = APIRouter(
    prefix="/api/v1/terminals",
    tags=["Terminals"],
    responses={
        403: {"description": "License is not active"},
        404: {"description": "License or session not found"},
        409: {"description": "Terminal quota exceeded"},
    },
)


@router.post("/activate", response_model=TerminalActivateResponse, summary="Register or reconnect a terminal")
def activate_terminal(
    body: TerminalActivateRequest,
    services: Services = Depends(get_services),
) -> TerminalActivateResponse:
    info = TerminalInfo(**body.model_dump(exclude={"license_key"}))
    result = services.registry.register_session(body.license_key, info)
    return TerminalActivateResponse(
        session_id=result.session_id,
        is_new=result.is_new,
        is_primary=result.is_primary,
        max_terminals=result.max_terminals,
        connected_terminals=result.connected_terminals,
        session=TerminalSessionResponse.model_validate(result.session),
    )


@router.post("/heartbeat", response_model=TerminalSessionResponse)
def heartbeat(
    body: TerminalHeartbeatRequest,
    services: Services = Depends(get_services),
) -> TerminalSessionResponse:
    session = services.registry.heartbeat(body.license_key, body.machine_id_hash)
    return TerminalSessionResponse.model_validate(session)


@router.post("/disconnect", response_model=TerminalSessionResponse)
def disconnect(
    body: TerminalDisconnectRequest,
    services: Services = Depends(get_services),
) -> TerminalSessionResponse:
    session = services.registry.disconnect(body.license_key, body.machine_id_hash, reason=body.reason)
    return TerminalSessionResponse.model_validate(session)


@router.post("/broadcast", response_model=TerminalBroadcastResponse, summary="Broadcast to or deactivate all terminals")
def broadcast_to_terminals(
    body: TerminalBroadcastRequest,
    services: Services = Depends(get_services),
    admin: str = Depends(require_admin_token),
) -> TerminalBroadcastResponse:
    if body.action == "deactivate":
        machines = services.registry.deactivate_terminals(body.license_key, reason=body.reason)
        return TerminalBroadcastResponse(
            action=body.action, license_key=body.license_key, machine_id_hashes=machines
        )

    record = services.coordination.broadcast(
        body.license_key,
        body.event_type,
        body.payload,
        targets=body.targets,
        source_machine_id_hash=body.source_machine_id_hash,
    )
    return TerminalBroadcastResponse(
        action=body.action,
        license_key=body.license_key,
        event_id=record.event_id,
        machine_id_hashes=record.target_machine_id_hashes or [],
    )


@router.get("/{license_key}", response_model=List[TerminalSessionResponse], summary="List terminals of a license")
def list_terminals(
    license_key: str,
    status: Optional[ConnectionStatus] = Query(None),
    services: Services = Depends(get_services),
) -> List[TerminalSessionResponse]:
    return [
        TerminalSessionResponse.model_validate(session)
        for session in services.registry.list_sessions(license_key, status=status)
    ]


async def terminal_event_generator(
    request: Request,
    client: redis.Redis,
    license_key: str,
    machine_id_hash: str,
    backlog: List[Dict[str, Any]],
) -> AsyncGenerator[dict, None]:
    """
    Stream envelopes addressed to one terminal.

    The presence key is refreshed while the stream is open; the delivery
    coordinator only pushes to terminals that hold one.
    """
    presence = presence_key(license_key, machine_id_hash)
    channel = channel_name(license_key)

    for envelope in backlog:
        yield {"event": envelope["event_type"], "id": envelope["event_id"], "data": json.dumps(envelope, default=str)}

    pubsub = client.pubsub()
    await pubsub.subscribe(channel)
    await client.set(presence, "1", ex=PRESENCE_TTL_SECONDS)
    logger.info("terminal_stream_opened", license_key=license_key, machine_id_hash=machine_id_hash)

    loop = asyncio.get_running_loop()
    last_keepalive = loop.time()
    try:
        while True:
            if await request.is_disconnected():
                break

            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                try:
                    decoded = json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning("terminal_stream_bad_message", channel=channel)
                    continue
                target = decoded.get("target")
                if target is None or target == machine_id_hash:
                    envelope = decoded["envelope"]
                    yield {
                        "event": envelope["event_type"],
                        "id": envelope["event_id"],
                        "data": json.dumps(envelope, default=str),
                    }

            if loop.time() - last_keepalive >= KEEPALIVE_SECONDS:
                await client.set(presence, "1", ex=PRESENCE_TTL_SECONDS)
                yield {"event": "keepalive", "data": "{}"}
                last_keepalive = loop.time()
    finally:
        await client.delete(presence)
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info("terminal_stream_closed", license_key=license_key, machine_id_hash=machine_id_hash)


@router.get("/{license_key}/{machine_id_hash}/stream", summary="Server-sent events for one terminal")
def stream_events(
    request: Request,
    license_key: str,
    machine_id_hash: str,
    since: Optional[datetime] = Query(None, description="Replay retained events created after this instant"),
    services: Services = Depends(get_services),
    client: redis.Redis = Depends(get_redis),
) -> EventSourceResponse:
    session = services.registry.get_session(license_key, machine_id_hash)
    backlog = services.publisher.log.replay_since(license_key, since).envelopes() if since else []
    if backlog:
        logger.info(
            "terminal_stream_backlog",
            license_key=license_key,
            machine_id_hash=session.machine_id_hash,
            count=len(backlog),
        )
    return EventSourceResponse(terminal_event_generator(request, client, license_key, machine_id_hash, backlog))
