"""
Cross-terminal coordination: broadcasts and acknowledged state syncs.

A state sync is complete once every terminal expected at creation time has
acknowledged it; terminals that connect later are not waited for.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.exceptions import ErrorCode, NotFoundError
from ..core.logging import get_logger
from ..models.enums import EventType, SyncStatus
from ..models.terminal_coordination_event import TerminalCoordinationEvent
from ..models.terminal_session import TerminalSession
from ..models.terminal_state_sync import TerminalStateSync
from ..schemas.events import EventPayload, StateSyncPayload
from .event_publisher import EventPublisher
from .terminal_session_service import connected_machines

logger = get_logger(__name__)


def new_sync_id() -> str:
    return f"sync_{uuid.uuid4().hex}"


class TerminalCoordinationService:
    """Broadcast events between terminals of one license."""

    def __init__(
        self,
        db: Session,
        publisher: EventPublisher,
        clock: Clock = utc_now,
        sync_timeout_seconds: Optional[int] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.clock = clock
        self.sync_timeout = timedelta(seconds=sync_timeout_seconds or settings.sync_timeout_seconds)

    def broadcast(
        self,
        license_key: str,
        event_type: EventType | str,
        payload: EventPayload | Dict[str, Any],
        targets: Optional[Iterable[str]] = None,
        source_machine_id_hash: Optional[str] = None,
    ) -> TerminalCoordinationEvent:
        """
        Publish a coordination event, commit it and push it to the targets.

        Targets default to every connected terminal except the source.
        """
        try:
            record = self._record_broadcast(license_key, event_type, payload, targets, source_machine_id_hash)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.publisher.discard_pending()
            raise
        self.publisher.dispatch_pending()

        logger.info(
            "terminal_broadcast_sent",
            license_key=license_key,
            event_type=record.event_type,
            event_id=record.event_id,
            target_count=len(record.target_machine_id_hashes or []),
        )
        return record

    def _record_broadcast(
        self,
        license_key: str,
        event_type: EventType | str,
        payload: EventPayload | Dict[str, Any],
        targets: Optional[Iterable[str]],
        source_machine_id_hash: Optional[str],
    ) -> TerminalCoordinationEvent:
        if targets is None:
            machines = connected_machines(self.db, license_key, exclude=source_machine_id_hash)
        else:
            machines = [machine for machine in dict.fromkeys(targets) if machine != source_machine_id_hash]

        event = self.publisher.publish(license_key, event_type, payload, targets=machines)
        record = TerminalCoordinationEvent(
            license_key=license_key,
            event_type=event.event_type,
            event_id=event.event_id,
            source_machine_id_hash=source_machine_id_hash,
            target_machine_id_hashes=machines,
            payload=event.payload,
            delivery_status={machine: "pending" for machine in machines},
        )
        self.db.add(record)
        self.db.flush()
        return record

    def synchronize_state(
        self,
        license_key: str,
        sync_type: str,
        source_machine_id_hash: Optional[str],
        data: Dict[str, Any],
        targets: Optional[List[str]] = None,
    ) -> TerminalStateSync:
        """
        Start a state sync and push it to the expected terminals.

        With nobody to wait for the sync is completed immediately and no
        event is published.
        """
        now = self.clock()
        if targets is not None:
            expected = [machine for machine in dict.fromkeys(targets) if machine != source_machine_id_hash]
        else:
            expected = connected_machines(self.db, license_key, exclude=source_machine_id_hash)

        sync = TerminalStateSync(
            sync_id=new_sync_id(),
            license_key=license_key,
            sync_type=sync_type,
            source_machine_id_hash=source_machine_id_hash,
            target_machine_id_hashes=list(targets) if targets is not None else None,
            expected_acknowledgers=expected,
            acknowledged_by=[],
            payload=data,
            created_at=now,
        )
        self.db.add(sync)

        try:
            if not expected:
                sync.status = SyncStatus.COMPLETED
                sync.completed_at = now
                self.db.flush()
            else:
                record = self._record_broadcast(
                    license_key,
                    EventType.STATE_SYNC,
                    StateSyncPayload(
                        sync_id=sync.sync_id,
                        sync_type=sync_type,
                        source_machine_id_hash=source_machine_id_hash,
                        targets=targets,
                        data=data,
                    ),
                    expected,
                    source_machine_id_hash,
                )
                sync.event_id = record.event_id
                sync.status = SyncStatus.IN_PROGRESS
                self.db.flush()
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.publisher.discard_pending()
            raise
        self.publisher.dispatch_pending()

        logger.info(
            "state_sync_started",
            sync_id=sync.sync_id,
            license_key=license_key,
            sync_type=sync_type,
            expected_count=len(expected),
            status=sync.status.value,
        )
        return sync

    def acknowledge_sync(self, sync_id: str, machine_id_hash: str) -> TerminalStateSync:
        """
        Record one terminal's acknowledgment of a sync. Idempotent.

        Raises:
            NotFoundError: Unknown sync, or the terminal has no session under the license
        """
        sync = self._locked_sync(sync_id)
        if sync.status in (SyncStatus.COMPLETED, SyncStatus.FAILED):
            self.db.commit()
            return sync

        session = self.db.scalar(
            select(TerminalSession.id).where(
                TerminalSession.license_key == sync.license_key,
                TerminalSession.machine_id_hash == machine_id_hash,
            )
        )
        if session is None:
            self.db.rollback()
            raise NotFoundError(
                "Terminal has no session under this license",
                error_code=ErrorCode.SESSION_NOT_FOUND,
                details={"sync_id": sync_id, "machine_id_hash": machine_id_hash},
            )

        if machine_id_hash not in sync.acknowledged_by:
            sync.acknowledged_by = [*sync.acknowledged_by, machine_id_hash]

        if set(sync.expected_acknowledgers) <= set(sync.acknowledged_by):
            sync.status = SyncStatus.COMPLETED
            sync.completed_at = self.clock()
            logger.info("state_sync_completed", sync_id=sync_id, acknowledged_count=len(sync.acknowledged_by))

        self.db.commit()
        return sync

    def expire_stale_syncs(self) -> int:
        """Fail syncs still waiting for acknowledgments after the timeout."""
        cutoff = self.clock() - self.sync_timeout
        stale = list(
            self.db.scalars(
                select(TerminalStateSync)
                .where(
                    TerminalStateSync.status.in_((SyncStatus.PENDING, SyncStatus.IN_PROGRESS)),
                    TerminalStateSync.created_at < cutoff,
                )
                .with_for_update(skip_locked=True)
            ).all()
        )
        for sync in stale:
            sync.status = SyncStatus.FAILED
            missing = sorted(set(sync.expected_acknowledgers) - set(sync.acknowledged_by))
            logger.warning("state_sync_timed_out", sync_id=sync.sync_id, missing=missing)
        self.db.commit()
        return len(stale)

    def get_sync(self, sync_id: str) -> TerminalStateSync:
        sync = self.db.scalar(select(TerminalStateSync).where(TerminalStateSync.sync_id == sync_id))
        if sync is None:
            raise NotFoundError(
                f"Sync {sync_id} not found",
                error_code=ErrorCode.SYNC_NOT_FOUND,
                details={"sync_id": sync_id},
            )
        return sync

    def _locked_sync(self, sync_id: str) -> TerminalStateSync:
        sync = self.db.scalar(
            select(TerminalStateSync).where(TerminalStateSync.sync_id == sync_id).with_for_update()
        )
        if sync is None:
            raise NotFoundError(
                f"Sync {sync_id} not found",
                error_code=ErrorCode.SYNC_NOT_FOUND,
                details={"sync_id": sync_id},
            )
        return sync
