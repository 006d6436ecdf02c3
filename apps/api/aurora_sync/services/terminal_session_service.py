"""
Terminal session registry.

Sessions are keyed by (machine_id_hash, license_key) and written with an
atomic insert-or-update, never read-then-write. Quota and primary election
run under a lock on the license row, which serialises registrations of the
same license.

Invariants per license:
- connected sessions <= ``licenses.max_terminals``
- at most one connected session with ``is_primary``
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..config import settings
from ..core.clock import Clock, utc_now
from ..core.exceptions import (
    ErrorCode,
    LicenseInactiveError,
    NotFoundError,
    TerminalQuotaExceededError,
    UnsupportedDatabaseError,
)
from ..core.logging import get_logger
from ..metrics import stale_sessions_total, terminal_registrations_total
from ..models.enums import ConnectionStatus, EventType
from ..models.license import License
from ..models.terminal_coordination_event import TerminalCoordinationEvent
from ..models.terminal_session import TerminalSession
from ..schemas.events import (
    DeactivationBroadcastPayload,
    PrimaryChangedPayload,
    TerminalAddedPayload,
    TerminalReconnectedPayload,
    TerminalRemovedPayload,
)
from ..schemas.terminals import TerminalInfo

if TYPE_CHECKING:
    from .event_publisher import EventPublisher

logger = get_logger(__name__)

_INFO_FIELDS = ("terminal_name", "hostname", "ip_address", "app_version", "os_info")


def resolve_targets(db: Session, license_key: str) -> List[str]:
    """Every session of the license that has not been deactivated, oldest first."""
    return list(
        db.scalars(
            select(TerminalSession.machine_id_hash)
            .where(
                TerminalSession.license_key == license_key,
                TerminalSession.connection_status != ConnectionStatus.DEACTIVATED,
            )
            .order_by(TerminalSession.first_connected_at, TerminalSession.id)
        ).all()
    )


def connected_machines(db: Session, license_key: str, exclude: Optional[str] = None) -> List[str]:
    stmt = (
        select(TerminalSession.machine_id_hash)
        .where(
            TerminalSession.license_key == license_key,
            TerminalSession.connection_status == ConnectionStatus.CONNECTED,
        )
        .order_by(TerminalSession.first_connected_at, TerminalSession.id)
    )
    if exclude is not None:
        stmt = stmt.where(TerminalSession.machine_id_hash != exclude)
    return list(db.scalars(stmt).all())


def _upsert_statement(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(TerminalSession)
    if dialect == "sqlite":
        return sqlite.insert(TerminalSession)
    raise UnsupportedDatabaseError(
        f"Terminal session upsert is not available on {dialect}",
        details={"dialect": dialect},
    )


@dataclass
class RegistrationResult:
    session: TerminalSession
    is_new: bool
    is_primary: bool
    max_terminals: int
    connected_terminals: int

    @property
    def session_id(self) -> int:
        return self.session.id


class TerminalSessionRegistry:
    """Connection lifecycle of the terminals under each license."""

    def __init__(
        self,
        db: Session,
        publisher: EventPublisher,
        clock: Clock = utc_now,
        stale_after_seconds: Optional[int] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.clock = clock
        self.stale_after = timedelta(seconds=stale_after_seconds or settings.stale_session_seconds)

    @contextmanager
    def _unit(self, operation: str) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.publisher.discard_pending()
            logger.warning("terminal_operation_rolled_back", operation=operation)
            raise
        self.publisher.dispatch_pending()

    def register_session(self, license_key: str, info: TerminalInfo) -> RegistrationResult:
        """
        Register or reconnect a terminal.

        A reconnect keeps ``first_connected_at``. The terminal becomes primary
        only when no other connected session is primary.

        Raises:
            NotFoundError: Unknown license key
            LicenseInactiveError: The license no longer allows activations
            TerminalQuotaExceededError: ``max_terminals`` already connected
        """
        with self._unit("register_session"):
            result = self._register(license_key, info)
        return result

    def heartbeat(self, license_key: str, machine_id_hash: str) -> TerminalSession:
        """
        Refresh liveness. A session the stale sweep disconnected registers again.

        Raises:
            NotFoundError: No session for this terminal
            LicenseInactiveError: The session was deactivated
        """
        session = self.get_session(license_key, machine_id_hash)

        if session.connection_status == ConnectionStatus.DEACTIVATED:
            raise LicenseInactiveError(
                "Terminal was deactivated",
                details={"license_key": license_key, "machine_id_hash": machine_id_hash},
            )

        if session.connection_status == ConnectionStatus.DISCONNECTED:
            return self.register_session(license_key, TerminalInfo(machine_id_hash=machine_id_hash)).session

        with self._unit("heartbeat"):
            session.last_heartbeat_at = self.clock()
        return session

    def disconnect(self, license_key: str, machine_id_hash: str, reason: str = "client_disconnect") -> TerminalSession:
        """Mark a terminal disconnected and re-elect the primary if needed. Idempotent."""
        session = self.get_session(license_key, machine_id_hash)
        if session.connection_status != ConnectionStatus.CONNECTED:
            return session

        with self._unit("disconnect"):
            self._disconnect(session, reason)
        return session

    def promote_new_primary(
        self,
        license_key: str,
        previous_primary: Optional[str] = None,
        reason: str = "primary_disconnected",
    ) -> Optional[TerminalSession]:
        """
        Make the oldest connected session primary. Does not commit.

        Emits ``primary_changed`` even when no session is left to promote.
        """
        current = self.db.scalar(
            select(TerminalSession).where(
                TerminalSession.license_key == license_key,
                TerminalSession.connection_status == ConnectionStatus.CONNECTED,
                TerminalSession.is_primary.is_(True),
            )
        )
        if current is not None:
            return current

        candidate = self.db.scalar(
            select(TerminalSession)
            .where(
                TerminalSession.license_key == license_key,
                TerminalSession.connection_status == ConnectionStatus.CONNECTED,
            )
            .order_by(TerminalSession.first_connected_at, TerminalSession.id)
            .limit(1)
        )
        if candidate is not None:
            candidate.is_primary = True
        self.db.flush()

        new_primary = candidate.machine_id_hash if candidate else None
        self.publisher.publish(
            license_key,
            EventType.PRIMARY_CHANGED,
            PrimaryChangedPayload(
                previous_primary=previous_primary,
                new_primary=new_primary,
                reason=reason,
                changed_at=self.clock(),
            ),
            targets=connected_machines(self.db, license_key),
        )
        logger.info(
            "primary_terminal_changed",
            license_key=license_key,
            previous_primary=previous_primary,
            new_primary=new_primary,
            reason=reason,
        )
        return candidate

    def detect_stale(self) -> List[TerminalSession]:
        """Force-disconnect connected sessions whose heartbeat is older than the stale window."""
        cutoff = self.clock() - self.stale_after

        with self._unit("detect_stale"):
            stale = list(
                self.db.scalars(
                    select(TerminalSession)
                    .where(
                        TerminalSession.connection_status == ConnectionStatus.CONNECTED,
                        TerminalSession.last_heartbeat_at < cutoff,
                    )
                    .order_by(TerminalSession.license_key, TerminalSession.first_connected_at)
                    .with_for_update(skip_locked=True)
                ).all()
            )
            for session in stale:
                self._disconnect(session, "heartbeat_timeout")
                stale_sessions_total.inc()

        if stale:
            logger.info("stale_sessions_disconnected", count=len(stale), cutoff=cutoff.isoformat())
        return stale

    def deactivate_all(self, license_key: str, reason: str, notify: bool = False) -> List[str]:
        """
        Deactivate every session of a license, connected or not. Does not commit.

        With ``notify`` a ``deactivation_broadcast`` goes to the affected
        terminals; license transitions publish their own revocation event
        instead.
        """
        now = self.clock()
        sessions = list(
            self.db.scalars(
                select(TerminalSession)
                .where(
                    TerminalSession.license_key == license_key,
                    TerminalSession.connection_status != ConnectionStatus.DEACTIVATED,
                )
                .order_by(TerminalSession.first_connected_at, TerminalSession.id)
            ).all()
        )
        machines = [session.machine_id_hash for session in sessions]

        for session in sessions:
            if session.connection_status == ConnectionStatus.CONNECTED:
                session.disconnected_at = now
            session.connection_status = ConnectionStatus.DEACTIVATED
            session.deactivated_at = now
            session.is_primary = False
        self.db.flush()

        if notify and machines:
            payload = DeactivationBroadcastPayload(reason=reason, deactivated_at=now, machine_id_hashes=machines)
            event = self.publisher.publish(
                license_key,
                EventType.DEACTIVATION_BROADCAST,
                payload,
                targets=machines,
            )
            self.db.add(
                TerminalCoordinationEvent(
                    license_key=license_key,
                    event_type=EventType.DEACTIVATION_BROADCAST.value,
                    event_id=event.event_id,
                    target_machine_id_hashes=machines,
                    payload=event.payload,
                    delivery_status={machine: "pending" for machine in machines},
                )
            )
            self.db.flush()

        logger.info(
            "terminal_sessions_deactivated",
            license_key=license_key,
            count=len(machines),
            reason=reason,
        )
        return machines

    def deactivate_terminals(self, license_key: str, reason: str = "terminals_reset") -> List[str]:
        """Deactivate all terminals of a license without touching the license itself."""
        with self._unit("deactivate_terminals"):
            self._locked_license(license_key)
            machines = self.deactivate_all(license_key, reason, notify=True)
        return machines

    def get_session(self, license_key: str, machine_id_hash: str) -> TerminalSession:
        session = self.db.scalar(
            select(TerminalSession).where(
                TerminalSession.license_key == license_key,
                TerminalSession.machine_id_hash == machine_id_hash,
            )
        )
        if session is None:
            raise NotFoundError(
                "Terminal session not found",
                error_code=ErrorCode.SESSION_NOT_FOUND,
                details={"license_key": license_key, "machine_id_hash": machine_id_hash},
            )
        return session

    def list_sessions(self, license_key: str, status: Optional[ConnectionStatus] = None) -> List[TerminalSession]:
        stmt = select(TerminalSession).where(TerminalSession.license_key == license_key)
        if status is not None:
            stmt = stmt.where(TerminalSession.connection_status == status)
        return list(self.db.scalars(stmt.order_by(TerminalSession.first_connected_at, TerminalSession.id)).all())

    def resolve_targets(self, license_key: str) -> List[str]:
        return resolve_targets(self.db, license_key)

    def count_connected(self, license_key: str, exclude: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(TerminalSession).where(
            TerminalSession.license_key == license_key,
            TerminalSession.connection_status == ConnectionStatus.CONNECTED,
        )
        if exclude is not None:
            stmt = stmt.where(TerminalSession.machine_id_hash != exclude)
        return self.db.scalar(stmt) or 0

    def _register(self, license_key: str, info: TerminalInfo) -> RegistrationResult:
        now = self.clock()
        license = self._locked_license(license_key)
        if not license.is_active:
            raise LicenseInactiveError(
                "License is not active",
                details={"license_key": license_key, "status": license.status.value},
            )

        machine_id_hash = info.machine_id_hash
        previous = self.db.scalar(
            select(TerminalSession.connection_status).where(
                TerminalSession.license_key == license_key,
                TerminalSession.machine_id_hash == machine_id_hash,
            )
        )
        has_history = self.db.scalar(
            select(func.count()).select_from(TerminalSession).where(
                TerminalSession.license_key == license_key,
                TerminalSession.machine_id_hash != machine_id_hash,
            )
        )

        connected_others = self.count_connected(license_key, exclude=machine_id_hash)
        if connected_others >= license.max_terminals:
            raise TerminalQuotaExceededError(
                "Maximum number of terminals already connected",
                details={
                    "license_key": license_key,
                    "max_terminals": license.max_terminals,
                    "connected_terminals": connected_others,
                },
            )

        other_primary = self.db.scalar(
            select(TerminalSession.machine_id_hash).where(
                TerminalSession.license_key == license_key,
                TerminalSession.connection_status == ConnectionStatus.CONNECTED,
                TerminalSession.is_primary.is_(True),
                TerminalSession.machine_id_hash != machine_id_hash,
            )
        )
        claim_primary = other_primary is None

        reported = {field: getattr(info, field) for field in _INFO_FIELDS if getattr(info, field) is not None}
        values = {
            "machine_id_hash": machine_id_hash,
            "license_key": license_key,
            **reported,
            "connection_status": ConnectionStatus.CONNECTED,
            "first_connected_at": now,
            "last_connected_at": now,
            "last_heartbeat_at": now,
            "is_primary": claim_primary,
            "created_at": now,
            "updated_at": now,
        }
        update_set = {
            **reported,
            "connection_status": ConnectionStatus.CONNECTED,
            "last_connected_at": now,
            "last_heartbeat_at": now,
            "disconnected_at": None,
            "deactivated_at": None,
            "updated_at": now,
        }
        if claim_primary:
            update_set["is_primary"] = True

        stmt = _upsert_statement(self.db).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["machine_id_hash", "license_key"],
            set_=update_set,
        )
        self.db.execute(stmt)

        session = self.db.scalar(
            select(TerminalSession)
            .where(
                TerminalSession.license_key == license_key,
                TerminalSession.machine_id_hash == machine_id_hash,
            )
            .execution_options(populate_existing=True)
        )

        is_new = previous is None
        others = connected_machines(self.db, license_key, exclude=machine_id_hash)
        if is_new:
            self.publisher.publish(
                license_key,
                EventType.TERMINAL_ADDED,
                TerminalAddedPayload(
                    machine_id_hash=machine_id_hash,
                    terminal_name=session.terminal_name,
                    is_primary=session.is_primary,
                    connected_at=now,
                ),
                targets=others,
            )
        elif previous != ConnectionStatus.CONNECTED:
            self.publisher.publish(
                license_key,
                EventType.TERMINAL_RECONNECTED,
                TerminalReconnectedPayload(
                    machine_id_hash=machine_id_hash,
                    terminal_name=session.terminal_name,
                    is_primary=session.is_primary,
                    reconnected_at=now,
                ),
                targets=others,
            )

        if claim_primary and has_history and previous != ConnectionStatus.CONNECTED:
            self.publisher.publish(
                license_key,
                EventType.PRIMARY_CHANGED,
                PrimaryChangedPayload(
                    previous_primary=None,
                    new_primary=machine_id_hash,
                    reason="primary_claimed",
                    changed_at=now,
                ),
                targets=others + [machine_id_hash],
            )

        kind = "new" if is_new else ("reconnect" if previous != ConnectionStatus.CONNECTED else "refresh")
        terminal_registrations_total.labels(kind=kind).inc()
        logger.info(
            "terminal_registered",
            license_key=license_key,
            machine_id_hash=machine_id_hash,
            kind=kind,
            is_primary=session.is_primary,
        )

        return RegistrationResult(
            session=session,
            is_new=is_new,
            is_primary=session.is_primary,
            max_terminals=license.max_terminals,
            connected_terminals=connected_others + 1,
        )

    def _disconnect(self, session: TerminalSession, reason: str) -> None:
        now = self.clock()
        was_primary = session.is_primary

        session.connection_status = ConnectionStatus.DISCONNECTED
        session.disconnected_at = now
        session.is_primary = False
        self.db.flush()

        self.publisher.publish(
            session.license_key,
            EventType.TERMINAL_REMOVED,
            TerminalRemovedPayload(
                machine_id_hash=session.machine_id_hash,
                reason=reason,
                disconnected_at=now,
            ),
            targets=connected_machines(self.db, session.license_key),
        )
        logger.info(
            "terminal_disconnected",
            license_key=session.license_key,
            machine_id_hash=session.machine_id_hash,
            reason=reason,
            was_primary=was_primary,
        )

        if was_primary:
            self.promote_new_primary(session.license_key, previous_primary=session.machine_id_hash, reason=reason)

    def _locked_license(self, license_key: str) -> License:
        license = self.db.scalar(
            select(License).where(License.license_key == license_key).with_for_update()
        )
        if license is None:
            raise NotFoundError(
                "License not found",
                error_code=ErrorCode.LICENSE_NOT_FOUND,
                details={"license_key": license_key},
            )
        return license
