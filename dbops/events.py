"""Typed notifications published by the connection core."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .models import ConnectionProfile, ConnectionState, SessionRow, utcnow

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RegistryChanged:
    """The set of saved profiles changed and was persisted."""

    profiles: tuple[ConnectionProfile, ...]


@dataclass(frozen=True, slots=True)
class ConnectionDeleted:
    """A profile was removed from the registry."""

    connection_id: str


@dataclass(frozen=True, slots=True)
class StateChanged:
    """The session lifecycle moved between connection states."""

    old: ConnectionState
    new: ConnectionState
    profile: ConnectionProfile | None = None
    error: str | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class SessionsRefreshed:
    """Cached session rows were replaced."""

    profile: ConnectionProfile | None
    sessions: tuple[SessionRow, ...]
    refreshed_at: datetime


@dataclass(frozen=True, slots=True)
class ErrorOccurred:
    """A recoverable failure the user should hear about."""

    message: str
    source: str = "core"


@dataclass(frozen=True, slots=True)
class ConnectionSwitched:
    """The operator selected a profile and it connected."""

    profile: ConnectionProfile


@dataclass(frozen=True, slots=True)
class ConnectionAutoSwitched:
    """Failover picked a new active profile without operator input."""

    profile: ConnectionProfile
    reason: str


@dataclass(frozen=True, slots=True)
class NoConnectionsAvailable:
    """Failover ran out of candidates; the UI should prompt for a profile."""

    message: str


Event = (
    RegistryChanged
    | ConnectionDeleted
    | StateChanged
    | SessionsRefreshed
    | ErrorOccurred
    | ConnectionSwitched
    | ConnectionAutoSwitched
    | NoConnectionsAvailable
)
EventListener = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out of core events to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[tuple[EventListener, tuple[type, ...]]] = []

    def subscribe(self, listener: EventListener, *kinds: type) -> Callable[[], None]:
        """Register `listener` for `kinds` (all events when omitted); returns an unsubscribe handle."""

        entry = (listener, tuple(kinds))
        with self._lock:
            self._listeners.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = tuple(self._listeners)
        for listener, kinds in listeners:
            if kinds and not isinstance(event, kinds):
                continue
            try:
                listener(event)
            except Exception:
                LOG.exception("Event listener failed", extra={"event": type(event).__name__})


__all__ = [
    "ConnectionAutoSwitched",
    "ConnectionDeleted",
    "ConnectionSwitched",
    "ErrorOccurred",
    "Event",
    "EventBus",
    "EventListener",
    "NoConnectionsAvailable",
    "RegistryChanged",
    "SessionsRefreshed",
    "StateChanged",
]
