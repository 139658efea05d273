"""Encrypted PostgreSQL connection profiles with a failover-aware session lifecycle."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import AppConfig, load_config
from .crypto import EncryptionService, MachineEntropyProvider, StaticMachineEntropy, SystemMachineEntropy
from .errors import (
    ConnectivityError,
    DbOpsError,
    DecryptionError,
    DuplicateConnectionError,
    EncryptionError,
    InvalidTransitionError,
    PersistenceError,
    QueryExecutionError,
    UnknownConnectionError,
    ValidationError,
)
from .events import (
    ConnectionAutoSwitched,
    ConnectionDeleted,
    ConnectionSwitched,
    ErrorOccurred,
    EventBus,
    NoConnectionsAvailable,
    RegistryChanged,
    SessionsRefreshed,
    StateChanged,
)
from .manager import ConnectionManager, ImportResult, SecretLookup, SecretStatus
from .models import ConnectionProfile, ConnectionState, SessionRow
from .queries import AsyncpgSessionQuery, ConnectionParams, SessionQuery
from .registry import ConnectionRegistry
from .runtime import Runtime, create_runtime
from .session import OperationResult, SessionLifecycle, SessionState
from .store import ConnectionStore

__all__ = [
    "AppConfig",
    "AsyncpgSessionQuery",
    "ConnectionAutoSwitched",
    "ConnectionDeleted",
    "ConnectionManager",
    "ConnectionParams",
    "ConnectionProfile",
    "ConnectionRegistry",
    "ConnectionState",
    "ConnectionStore",
    "ConnectionSwitched",
    "ConnectivityError",
    "DbOpsError",
    "DecryptionError",
    "DuplicateConnectionError",
    "EncryptionError",
    "EncryptionService",
    "ErrorOccurred",
    "EventBus",
    "ImportResult",
    "InvalidTransitionError",
    "MachineEntropyProvider",
    "NoConnectionsAvailable",
    "OperationResult",
    "PersistenceError",
    "QueryExecutionError",
    "RegistryChanged",
    "Runtime",
    "SecretLookup",
    "SecretStatus",
    "SessionLifecycle",
    "SessionQuery",
    "SessionRow",
    "SessionState",
    "SessionsRefreshed",
    "StateChanged",
    "StaticMachineEntropy",
    "SystemMachineEntropy",
    "UnknownConnectionError",
    "ValidationError",
    "create_runtime",
    "load_config",
]
