"""Wiring helpers that assemble the connection core for a host application."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import AppConfig, load_config
from .crypto import EncryptionService, MachineEntropyProvider
from .events import EventBus
from .manager import ConnectionManager
from .queries import AsyncpgSessionQuery, SessionQuery
from .session import SessionLifecycle
from .store import ConnectionStore

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Live set of core services sharing one event bus."""

    config: AppConfig
    bus: EventBus
    encryption: EncryptionService
    store: ConnectionStore
    query: SessionQuery
    manager: ConnectionManager
    lifecycle: SessionLifecycle

    def close(self) -> None:
        self.lifecycle.close()
        shutdown = getattr(self.query, "shutdown", None)
        if callable(shutdown):
            shutdown()


def create_runtime(
    config: AppConfig | None = None,
    *,
    query: SessionQuery | None = None,
    entropy: MachineEntropyProvider | None = None,
    bus: EventBus | None = None,
) -> Runtime:
    """Build and load the core services; the registry is read before returning."""

    config = config or load_config()
    bus = bus or EventBus()
    encryption = EncryptionService(entropy)
    store = ConnectionStore(config.resolved_connections_file())
    query = query or AsyncpgSessionQuery()
    manager = ConnectionManager(store, encryption, query, bus=bus, config=config)
    lifecycle = SessionLifecycle(manager, query, bus=bus, config=config)
    registry = manager.load()
    LOG.debug(
        "Runtime ready",
        extra={"path": str(store.path), "connections": len(registry.profiles)},
    )
    return Runtime(
        config=config,
        bus=bus,
        encryption=encryption,
        store=store,
        query=query,
        manager=manager,
        lifecycle=lifecycle,
    )


__all__ = ["Runtime", "create_runtime"]
