"""Shared models used across registry, manager and session modules."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_PORT = 5432


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_id() -> str:
    """Mint a new stable profile id."""

    return f"conn-{uuid.uuid4().hex}"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConnectionProfile(BaseModel):
    """Saved database target plus its encrypted secret."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str = ""
    host: str = ""
    database: str = ""
    port: int = DEFAULT_PORT
    username: str = ""
    encrypted_secret: str = Field(default="", alias="encryptedPassword")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    last_used_at: datetime = Field(default_factory=utcnow, alias="lastUsed")
    is_default: bool = Field(default=False, alias="isDefault")

    @field_validator("created_at", "last_used_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def unique_key(self) -> str:
        """Case-insensitive identity used for deduplication."""

        return f"{self.host.lower()}:{self.port}:{self.database.lower()}:{self.username.lower()}"

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return f"{self.host}:{self.port}/{self.database}"

    @property
    def summary(self) -> str:
        return f"{self.username}@{self.host}:{self.port}/{self.database}"

    @property
    def has_secret(self) -> bool:
        return bool(self.encrypted_secret)

    def validation_errors(self) -> dict[str, str]:
        """Return every failing field mapped to a human readable message."""

        errors: dict[str, str] = {}
        if not self.host.strip():
            errors["host"] = "Host is required"
        if not self.database.strip():
            errors["database"] = "Database name is required"
        if not self.username.strip():
            errors["username"] = "Username is required"
        if not 1 <= self.port <= 65535:
            errors["port"] = "Port must be between 1 and 65535"
        if not self.name.strip():
            errors["name"] = "Connection name is required"
        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors()


class ConnectionState(str, Enum):
    """Liveness of the active connection."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"


@dataclass(frozen=True, slots=True)
class SessionRow:
    """One backend row from pg_stat_activity."""

    pid: int
    database_name: str = ""
    username: str = ""
    application_name: str = ""
    client_address: str = ""
    client_hostname: str = ""
    state: str = ""
    query: str = ""
    query_start: datetime | None = None
    wait_event_type: str | None = None
    wait_event: str | None = None
    state_change: datetime | None = None
    backend_start: datetime | None = None
    transaction_start: datetime | None = None
    is_active: bool = False
    server_name: str = ""

    @property
    def machine(self) -> str:
        return self.client_hostname or self.client_address


__all__ = [
    "DEFAULT_PORT",
    "ConnectionProfile",
    "ConnectionState",
    "SessionRow",
    "as_utc",
    "generate_id",
    "utcnow",
]
