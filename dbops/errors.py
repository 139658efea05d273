"""Error taxonomy shared by the connection core."""

from __future__ import annotations

from typing import Mapping


class DbOpsError(RuntimeError):
    """Base error for connection core failures."""


class ValidationError(DbOpsError):
    """Raised when a profile fails field validation."""

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors = dict(errors)
        super().__init__(f"Invalid connection: {', '.join(self.errors.values())}")

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(self.errors)


class DuplicateConnectionError(DbOpsError):
    """Raised when another profile already targets the same database."""

    def __init__(self, unique_key: str) -> None:
        self.unique_key = unique_key
        super().__init__(f"A connection with the same details already exists: {unique_key}")


class UnknownConnectionError(DbOpsError):
    """Raised when an operation references a profile id that does not exist."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' not found.")


class EncryptionError(DbOpsError):
    """Raised when a secret cannot be encrypted."""


class DecryptionError(DbOpsError):
    """Raised when a stored secret cannot be decrypted on this machine."""


class PersistenceError(DbOpsError):
    """Raised when the registry file cannot be read or written."""


class ConnectivityError(DbOpsError):
    """Raised when a database cannot be reached or authenticated against."""


class QueryExecutionError(DbOpsError):
    """Raised when a query fails for reasons other than connectivity."""


class InvalidTransitionError(DbOpsError):
    """Raised when the session lifecycle is driven into an illegal state."""


__all__ = [
    "ConnectivityError",
    "DbOpsError",
    "DecryptionError",
    "DuplicateConnectionError",
    "EncryptionError",
    "InvalidTransitionError",
    "PersistenceError",
    "QueryExecutionError",
    "UnknownConnectionError",
    "ValidationError",
]
