"""Connection/session lifecycle: state machine, refresh and failover."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .config import AppConfig
from .errors import DbOpsError, InvalidTransitionError
from .events import (
    ConnectionAutoSwitched,
    ConnectionDeleted,
    ConnectionSwitched,
    ErrorOccurred,
    EventBus,
    NoConnectionsAvailable,
    SessionsRefreshed,
    StateChanged,
)
from .manager import ConnectionManager
from .models import ConnectionProfile, ConnectionState, SessionRow, utcnow
from .queries import ConnectionParams, SessionQuery, is_connectivity_error

LOG = logging.getLogger(__name__)

NO_ACTIVE_CONNECTION = "No active connection"
OPERATION_IN_PROGRESS = "Operation in progress"
NO_CONNECTIONS_CONFIGURED = "No connections configured"

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.CONNECTED, ConnectionState.FAILED}),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CONNECTING}
    ),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}


@dataclass(frozen=True, slots=True)
class SessionState:
    """Immutable snapshot of the lifecycle (active connection + cached rows)."""

    state: ConnectionState
    profile: ConnectionProfile | None
    sessions: tuple[SessionRow, ...]
    refreshed_at: datetime | None
    last_error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a lifecycle operation."""

    ok: bool
    message: str | None = None
    profile: ConnectionProfile | None = None
    busy: bool = False


class SessionLifecycle:
    """Drives the single active connection through its states.

    Operations run one at a time; a request that arrives while another is in
    flight is rejected with :data:`OPERATION_IN_PROGRESS` instead of queued.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        query: SessionQuery,
        *,
        bus: EventBus | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self._manager = manager
        self._query = query
        self._bus = bus or manager.bus
        self._config = config or AppConfig()
        self._busy = threading.Lock()
        self._rows_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending_deletions: set[str] = set()
        self._state = ConnectionState.DISCONNECTED
        self._active: ConnectionProfile | None = None
        self._handle: ConnectionParams | None = None
        self._last_attempt: ConnectionProfile | None = None
        self._sessions: tuple[SessionRow, ...] = ()
        self._refreshed_at: datetime | None = None
        self._last_error: str | None = None
        self._unsubscribe: Callable[[], None] | None = self._bus.subscribe(
            self._on_connection_deleted, ConnectionDeleted
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def active_profile(self) -> ConnectionProfile | None:
        return self._active

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._handle is not None

    @property
    def sessions(self) -> tuple[SessionRow, ...]:
        with self._rows_lock:
            return self._sessions

    def session_at(self, index: int) -> SessionRow | None:
        with self._rows_lock:
            if 0 <= index < len(self._sessions):
                return self._sessions[index]
            return None

    def snapshot(self) -> SessionState:
        with self._rows_lock:
            sessions = self._sessions
            refreshed_at = self._refreshed_at
        return SessionState(
            state=self._state,
            profile=self._active,
            sessions=sessions,
            refreshed_at=refreshed_at,
            last_error=self._last_error,
        )

    def connect(self, profile: ConnectionProfile) -> OperationResult:
        """Make `profile` the active connection (explicit operator choice)."""

        return self._exclusive(self._connect_selected, profile)

    def refresh(self) -> OperationResult:
        """Reload session rows for the active connection."""

        return self._exclusive(self._refresh_active, True)

    def retry(self) -> OperationResult:
        """Reconnect the profile whose last attempt failed."""

        return self._exclusive(self._retry_failed)

    def disconnect(self) -> OperationResult:
        return self._exclusive(self._disconnect)

    def failover(self, reason: str = "Active connection unavailable") -> OperationResult:
        """Try saved profiles in usage order until one connects."""

        return self._exclusive(self._failover, reason)

    def close(self) -> None:
        """Detach from the event bus and release the active connection."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._state is not ConnectionState.DISCONNECTED:
            self.disconnect()

    def _exclusive(self, operation: Callable[..., OperationResult], *args: object) -> OperationResult:
        if not self._busy.acquire(blocking=False):
            self._report(OPERATION_IN_PROGRESS)
            return OperationResult(False, OPERATION_IN_PROGRESS, busy=True)
        try:
            result = operation(*args)
        finally:
            self._busy.release()
        self._drain_deletions()
        return result

    def _connect_selected(self, profile: ConnectionProfile) -> OperationResult:
        result = self._attempt(profile)
        if result.ok and result.profile is not None:
            self._bus.publish(ConnectionSwitched(result.profile))
        elif result.message:
            self._report(result.message)
        return result

    def _retry_failed(self) -> OperationResult:
        if self._state is not ConnectionState.FAILED or self._last_attempt is None:
            return OperationResult(False, "Nothing to retry")
        latest = self._manager.get(self._last_attempt.id)
        if latest is None:
            message = f"Connection '{self._last_attempt.display_name}' no longer exists"
            self._report(message)
            return OperationResult(False, message)
        return self._connect_selected(latest)

    def _attempt(self, profile: ConnectionProfile) -> OperationResult:
        self._last_attempt = profile
        self._release()
        self._transition(ConnectionState.CONNECTING, profile=profile)

        lookup = self._manager.resolve_secret(profile)
        if not lookup.usable:
            return self._attempt_failed(
                profile,
                f"Password decryption failed for connection '{profile.display_name}'. "
                "This may be due to corrupted data or running on a different machine. "
                "Please edit the connection and re-enter the password.",
            )
        params = self._manager.connection_params(profile, lookup.value)
        try:
            ok = self._query.test_connection(params)
        except Exception as exc:
            return self._attempt_failed(profile, f"Could not connect to {profile.display_name}: {exc}")
        if not ok:
            return self._attempt_failed(profile, f"Could not connect to {profile.display_name}")

        self._active = profile
        self._handle = params
        self._last_error = None
        self._transition(ConnectionState.CONNECTED, profile=profile)
        self._manager.mark_used(profile.id)
        refreshed = self._refresh_active(False)
        if self._state is not ConnectionState.CONNECTED:
            return OperationResult(False, refreshed.message, profile=profile)
        return OperationResult(True, profile=profile)

    def _attempt_failed(self, profile: ConnectionProfile, message: str) -> OperationResult:
        LOG.warning("Connection attempt failed", extra={"connection_id": profile.id, "error": message})
        self._last_error = message
        self._transition(ConnectionState.FAILED, profile=profile, error=message)
        return OperationResult(False, message, profile=profile)

    def _refresh_active(self, allow_failover: bool) -> OperationResult:
        profile = self._active
        handle = self._handle
        if self._state is not ConnectionState.CONNECTED or profile is None or handle is None:
            self._report(NO_ACTIVE_CONNECTION)
            return OperationResult(False, NO_ACTIVE_CONNECTION)

        try:
            rows = tuple(self._query.run_session_query(handle))
        except Exception as exc:
            message = f"Failed to refresh sessions: {exc}"
            self._last_error = message
            self._report(message)
            if not is_connectivity_error(exc):
                # Stale rows stay visible.
                return OperationResult(False, message, profile=profile)
            self._release()
            self._transition(ConnectionState.FAILED, profile=profile, error=message)
            if allow_failover and self._config.failover_on_refresh_failure:
                return self._failover(f"Connection to {profile.display_name} lost")
            return OperationResult(False, message, profile=profile)

        self._replace_rows(profile, rows)
        return OperationResult(True, profile=profile)

    def _failover(self, reason: str) -> OperationResult:
        candidates = self._manager.sorted_by_usage()
        LOG.info("Starting failover", extra={"reason": reason, "candidates": len(candidates)})
        last_error: str | None = None
        for candidate in candidates:
            try:
                result = self._attempt(candidate)
            except DbOpsError as exc:
                LOG.warning("Failover candidate raised", extra={"connection_id": candidate.id, "error": str(exc)})
                last_error = str(exc)
                continue
            if result.ok and result.profile is not None:
                LOG.info("Failover switched connection", extra={"connection_id": candidate.id})
                self._bus.publish(ConnectionAutoSwitched(result.profile, reason))
                return result
            last_error = result.message

        if candidates:
            message = f"Failed to connect to any available connections. Last error: {last_error}"
        else:
            message = NO_CONNECTIONS_CONFIGURED
        self._enter_unavailable(message)
        return OperationResult(False, message)

    def _enter_unavailable(self, message: str) -> None:
        self._release()
        self._last_attempt = None
        self._last_error = message
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, error=message)
        self._report(message)
        self._bus.publish(NoConnectionsAvailable(message))

    def _disconnect(self) -> OperationResult:
        profile = self._active
        self._release()
        self._last_error = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, profile=profile)
        return OperationResult(True, profile=profile)

    def _on_connection_deleted(self, event: ConnectionDeleted) -> None:
        if self._last_attempt is not None and self._last_attempt.id == event.connection_id:
            self._last_attempt = None
        with self._pending_lock:
            self._pending_deletions.add(event.connection_id)
        self._drain_deletions()

    def _drain_deletions(self) -> None:
        # Deletions seen while another operation held the lock are settled once it is released.
        while self._pending_deletions and self._busy.acquire(blocking=False):
            try:
                self._settle_deletions()
            finally:
                self._busy.release()

    def _settle_deletions(self) -> None:
        with self._pending_lock:
            deleted = set(self._pending_deletions)
            self._pending_deletions.clear()
        active = self._active
        if active is None or active.id not in deleted:
            return
        LOG.info("Active connection deleted", extra={"connection_id": active.id})
        self._failover(f"Active connection '{active.display_name}' deleted")

    def _release(self) -> None:
        self._active = None
        self._handle = None
        with self._rows_lock:
            had_rows = bool(self._sessions)
            self._sessions = ()
        if had_rows:
            self._bus.publish(SessionsRefreshed(None, (), utcnow()))

    def _replace_rows(self, profile: ConnectionProfile, rows: tuple[SessionRow, ...]) -> None:
        refreshed_at = utcnow()
        with self._rows_lock:
            self._sessions = rows
            self._refreshed_at = refreshed_at
        self._bus.publish(SessionsRefreshed(profile, rows, refreshed_at))

    def _transition(
        self,
        new: ConnectionState,
        *,
        profile: ConnectionProfile | None = None,
        error: str | None = None,
    ) -> None:
        old = self._state
        if new not in _TRANSITIONS[old]:
            raise InvalidTransitionError(f"Illegal connection state change: {old.value} -> {new.value}")
        self._state = new
        LOG.info("Connection state changed", extra={"old": old.value, "new": new.value})
        self._bus.publish(StateChanged(old, new, profile, error))

    def _report(self, message: str) -> None:
        LOG.warning(message)
        self._bus.publish(ErrorOccurred(message, source="session"))


__all__ = [
    "NO_ACTIVE_CONNECTION",
    "NO_CONNECTIONS_CONFIGURED",
    "OPERATION_IN_PROGRESS",
    "OperationResult",
    "SessionLifecycle",
    "SessionState",
]
