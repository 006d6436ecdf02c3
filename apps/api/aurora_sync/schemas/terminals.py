"""
Schemas for terminal activation, liveness and state-sync endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models.enums import ConnectionStatus, EventType, SyncStatus


class TerminalInfo(BaseModel):
    """Identity and environment a terminal reports when it connects."""

    machine_id_hash: str = Field(..., min_length=8, max_length=128, description="Hashed machine identifier")
    terminal_name: Optional[str] = Field(None, max_length=255)
    hostname: Optional[str] = Field(None, max_length=255)
    ip_address: Optional[str] = Field(None, max_length=64)
    app_version: Optional[str] = Field(None, max_length=50)
    os_info: Optional[str] = Field(None, max_length=255)


class TerminalActivateRequest(TerminalInfo):
    license_key: str = Field(..., max_length=64)


class TerminalHeartbeatRequest(BaseModel):
    license_key: str = Field(..., max_length=64)
    machine_id_hash: str = Field(..., min_length=8, max_length=128)


class TerminalDisconnectRequest(TerminalHeartbeatRequest):
    reason: str = Field("client_disconnect", max_length=100)


class TerminalSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    machine_id_hash: str
    license_key: str
    terminal_name: Optional[str] = None
    hostname: Optional[str] = None
    app_version: Optional[str] = None
    connection_status: ConnectionStatus
    is_primary: bool
    first_connected_at: datetime
    last_connected_at: datetime
    last_heartbeat_at: datetime
    disconnected_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None


class TerminalActivateResponse(BaseModel):
    session_id: int
    is_new: bool
    is_primary: bool
    max_terminals: int
    connected_terminals: int
    session: TerminalSessionResponse


class StateSyncRequest(BaseModel):
    license_key: str = Field(..., max_length=64)
    source_machine_id_hash: str = Field(..., min_length=8, max_length=128)
    sync_type: str = Field(..., max_length=50, description="e.g. settings, catalog, shift")
    data: Dict[str, Any] = Field(default_factory=dict)
    targets: Optional[List[str]] = Field(None, description="Null means every connected terminal")


class StateSyncAckRequest(BaseModel):
    machine_id_hash: str = Field(..., min_length=8, max_length=128)


class StateSyncResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sync_id: str
    license_key: str
    sync_type: str
    status: SyncStatus
    event_id: Optional[str] = None
    expected_acknowledgers: List[str]
    acknowledged_by: List[str]
    completed_at: Optional[datetime] = None


class TerminalBroadcastRequest(BaseModel):
    """``broadcast`` pushes an event to the terminals; ``deactivate`` logs every terminal out."""

    action: Literal["broadcast", "deactivate"]
    license_key: str = Field(..., max_length=64)
    event_type: Optional[EventType] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    targets: Optional[List[str]] = Field(None, description="Null means every connected terminal")
    source_machine_id_hash: Optional[str] = Field(None, max_length=128)
    reason: str = Field("terminals_reset", max_length=100)

    @model_validator(mode="after")
    def _event_type_for_broadcast(self) -> "TerminalBroadcastRequest":
        if self.action == "broadcast" and self.event_type is None:
            raise ValueError("event_type is required for broadcast")
        return self


class TerminalBroadcastResponse(BaseModel):
    action: str
    license_key: str
    event_id: Optional[str] = None
    machine_id_hashes: List[str]
