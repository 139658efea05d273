"""Connection registry orchestration: persistence, secrets and validation."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from .config import AppConfig
from .crypto import EncryptionService
from .errors import (
    DbOpsError,
    DecryptionError,
    DuplicateConnectionError,
    PersistenceError,
    UnknownConnectionError,
    ValidationError,
)
from .events import ConnectionDeleted, ErrorOccurred, EventBus, RegistryChanged
from .models import ConnectionProfile, generate_id
from .queries import ConnectionParams, SessionQuery
from .registry import ConnectionRegistry
from .store import ConnectionStore

LOG = logging.getLogger(__name__)

_T = TypeVar("_T")


class SecretStatus(str, Enum):
    """Outcome of looking up a profile's stored secret."""

    OK = "ok"
    NOT_SET = "not_set"
    UNREADABLE = "unreadable"


@dataclass(frozen=True, slots=True)
class SecretLookup:
    """Tagged secret lookup so "no password" and "undecryptable" stay distinct."""

    status: SecretStatus
    value: str = field(default="", repr=False)
    error: str | None = None

    @property
    def usable(self) -> bool:
        return self.status is not SecretStatus.UNREADABLE


@dataclass(frozen=True, slots=True)
class ImportResult:
    """Summary of an import run."""

    added: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    replaced: bool = False


class ConnectionManager:
    """Single owner of the connection registry.

    Mutations are validated, persisted synchronously and rolled back when the
    write fails. Readers only ever receive copies.
    """

    def __init__(
        self,
        store: ConnectionStore,
        encryption: EncryptionService,
        query: SessionQuery,
        *,
        bus: EventBus | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self._store = store
        self._encryption = encryption
        self._query = query
        self._bus = bus or EventBus()
        self._config = config or AppConfig()
        self._lock = threading.RLock()
        self._registry = ConnectionRegistry.empty()

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> ConnectionRegistry:
        """Snapshot of the full registry."""

        with self._lock:
            return self._registry.model_copy(deep=True)

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        with self._lock:
            return tuple(profile.model_copy(deep=True) for profile in self._registry.profiles)

    @property
    def default_profile(self) -> ConnectionProfile | None:
        with self._lock:
            profile = self._registry.default_profile
            return profile.model_copy(deep=True) if profile else None

    @property
    def has_connections(self) -> bool:
        return self.count > 0

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._registry.profiles)

    @property
    def config_file_path(self) -> Path:
        return self._store.path

    @property
    def config_file_exists(self) -> bool:
        return self._store.exists()

    def get(self, connection_id: str) -> ConnectionProfile | None:
        with self._lock:
            profile = self._registry.find(connection_id)
            return profile.model_copy(deep=True) if profile else None

    def sorted_by_usage(self) -> tuple[ConnectionProfile, ...]:
        """Profiles in failover order: default, most recently used, name."""

        with self._lock:
            return tuple(profile.model_copy(deep=True) for profile in self._registry.sorted_by_usage())

    def load(self) -> ConnectionRegistry:
        """Read the registry file, degrading to an empty registry on any problem."""

        try:
            payload = self._store.read()
        except PersistenceError as exc:
            return self._load_failed(f"Failed to load connections: {exc}")

        if payload is None:
            LOG.info("No registry file found; creating one", extra={"path": str(self._store.path)})
            with self._lock:
                self._registry = ConnectionRegistry.empty()
                try:
                    self._persist(self._registry)
                except PersistenceError as exc:
                    self._report(f"Failed to save connections: {exc}")
            self._publish_registry_changed()
            return self.registry

        try:
            loaded = ConnectionRegistry.from_json(payload)
        except ValueError as exc:
            return self._load_failed(f"Failed to load configuration: {exc}")
        errors = loaded.validation_errors()
        if errors:
            return self._load_failed(f"Failed to load configuration: Invalid configuration: {', '.join(errors)}")
        if loaded.profiles and not self._encryption.self_test():
            return self._load_failed("Failed to load configuration: Encryption service test failed")

        with self._lock:
            self._registry = loaded
        LOG.info("Loaded connections", extra={"count": len(loaded.profiles)})
        self._publish_registry_changed()
        return self.registry

    def add(self, profile: ConnectionProfile, plain_secret: str = "") -> ConnectionProfile:
        """Validate, encrypt and persist a new profile."""

        candidate = profile.model_copy(deep=True)
        with self._reported("add connection"):
            errors = candidate.validation_errors()
            if errors:
                raise ValidationError(errors)
            with self._lock:
                if not candidate.id or self._registry.find(candidate.id) is not None:
                    candidate.id = generate_id()
                if self._registry.has_duplicate(candidate):
                    raise DuplicateConnectionError(candidate.unique_key)
                candidate.encrypted_secret = self._encryption.encrypt(plain_secret)
                stored = self._mutate(lambda registry: registry.add(candidate))
                result = stored.model_copy(deep=True)
        LOG.info("Added connection", extra={"connection_id": result.id, "connection": result.summary})
        self._publish_registry_changed()
        return result

    def update(self, profile: ConnectionProfile, plain_secret: str | None = None) -> ConnectionProfile:
        """Replace an existing profile's fields; the secret changes only when given."""

        candidate = profile.model_copy(deep=True)
        with self._reported("update connection"):
            errors = candidate.validation_errors()
            if errors:
                raise ValidationError(errors)
            with self._lock:
                current = self._registry.find(candidate.id)
                if current is None:
                    raise UnknownConnectionError(candidate.id)
                if self._registry.has_duplicate(candidate):
                    raise DuplicateConnectionError(candidate.unique_key)
                if plain_secret is None:
                    candidate.encrypted_secret = current.encrypted_secret
                else:
                    candidate.encrypted_secret = self._encryption.encrypt(plain_secret)
                self._mutate(lambda registry: registry.replace(candidate))
                result = self._registry.find(candidate.id).model_copy(deep=True)
        self._publish_registry_changed()
        return result

    def remove(self, connection_id: str) -> bool:
        """Delete a profile; returns False when the id is unknown."""

        with self._reported("remove connection"):
            with self._lock:
                if self._registry.find(connection_id) is None:
                    return False
                self._mutate(lambda registry: registry.remove(connection_id))
        LOG.info("Removed connection", extra={"connection_id": connection_id})
        self._publish_registry_changed()
        self._bus.publish(ConnectionDeleted(connection_id))
        return True

    def set_default(self, connection_id: str) -> None:
        with self._reported("set default connection"):
            with self._lock:
                if self._registry.find(connection_id) is None:
                    return
                self._mutate(lambda registry: registry.set_default(connection_id))
        self._publish_registry_changed()

    def mark_used(self, connection_id: str) -> None:
        """Record a successful connect; failures are reported, not raised."""

        try:
            with self._lock:
                if self._registry.find(connection_id) is None:
                    return
                self._mutate(lambda registry: registry.mark_used(connection_id))
        except PersistenceError as exc:
            self._report(f"Failed to update connection usage: {exc}")
            return
        self._publish_registry_changed()

    def resolve_secret(self, profile: ConnectionProfile) -> SecretLookup:
        if not profile.encrypted_secret:
            return SecretLookup(SecretStatus.NOT_SET)
        try:
            value = self._encryption.decrypt(profile.encrypted_secret)
        except DecryptionError as exc:
            self._report(f"Failed to decrypt password for {profile.display_name}: {exc}")
            return SecretLookup(SecretStatus.UNREADABLE, error=str(exc))
        return SecretLookup(SecretStatus.OK, value)

    def decrypted_secret(self, profile: ConnectionProfile) -> str:
        """Plaintext secret, or ``""`` when none is stored or it cannot be decrypted."""

        return self.resolve_secret(profile).value

    def connection_params(
        self,
        profile: ConnectionProfile,
        plain_secret: str,
        *,
        connect_timeout: float | None = None,
    ) -> ConnectionParams:
        return ConnectionParams(
            host=profile.host,
            port=profile.port,
            database=profile.database,
            user=profile.username,
            password=plain_secret,
            connect_timeout=connect_timeout or self._config.connect_timeout,
            command_timeout=self._config.command_timeout,
        )

    def test_connection(self, profile: ConnectionProfile, plain_secret: str) -> bool:
        """Check that the target answers; never raises."""

        params = self.connection_params(profile, plain_secret, connect_timeout=self._config.test_timeout)
        try:
            ok = self._query.test_connection(params)
        except Exception as exc:
            self._report(f"Connection test failed for {profile.display_name}: {exc}")
            return False
        if not ok:
            self._report(f"Connection test failed for {profile.display_name}")
        return bool(ok)

    def test_saved_connection(self, profile: ConnectionProfile) -> bool:
        """Check a saved profile using its stored secret."""

        lookup = self.resolve_secret(profile)
        if not lookup.usable:
            return False
        return self.test_connection(profile, lookup.value)

    def export_to(self, path: Path | str) -> None:
        """Write the full registry, ciphertexts included, to `path`."""

        with self._lock:
            payload = self._registry.to_json()
        with self._reported("export connections"):
            ConnectionStore(path, backup=False).write(payload.encode("utf-8"))
        LOG.info("Exported connections", extra={"path": str(path)})

    def import_from(self, path: Path | str, replace_existing: bool = False) -> ImportResult:
        """Replace the registry with, or merge in, profiles from an exported file."""

        with self._reported("import connections"):
            payload = ConnectionStore(path, backup=False).read()
            if payload is None:
                raise PersistenceError(f"Import file not found: {path}")
            try:
                imported = ConnectionRegistry.from_json(payload)
            except ValueError as exc:
                raise PersistenceError(f"Invalid import file {path}: {exc}") from exc
            with self._lock:
                if replace_existing:
                    result = self._replace_with(imported)
                else:
                    result = self._merge(imported)
        LOG.info(
            "Imported connections",
            extra={"path": str(path), "added": len(result.added), "skipped": len(result.skipped)},
        )
        self._publish_registry_changed()
        for connection_id in result.removed:
            self._bus.publish(ConnectionDeleted(connection_id))
        return result

    def _replace_with(self, imported: ConnectionRegistry) -> ImportResult:
        errors = imported.validation_errors()
        if errors:
            raise PersistenceError(f"Invalid import file: {', '.join(errors)}")

        kept = {profile.id for profile in imported.profiles}
        removed = tuple(profile.id for profile in self._registry.profiles if profile.id not in kept)

        def _apply(registry: ConnectionRegistry) -> None:
            registry.version = imported.version
            registry.default_id = imported.default_id
            registry.profiles = [profile.model_copy(deep=True) for profile in imported.profiles]
            registry.touch()

        self._mutate(_apply)
        return ImportResult(
            added=tuple(profile.id for profile in imported.profiles),
            removed=removed,
            replaced=True,
        )

    def _merge(self, imported: ConnectionRegistry) -> ImportResult:
        added: list[str] = []
        skipped: list[str] = []

        def _apply(registry: ConnectionRegistry) -> None:
            for profile in imported.profiles:
                known_keys = {existing.unique_key for existing in registry.profiles}
                if profile.unique_key in known_keys or not profile.is_valid():
                    skipped.append(profile.display_name)
                    continue
                candidate = profile.model_copy(deep=True, update={"id": generate_id(), "is_default": False})
                registry.add(candidate)
                added.append(candidate.id)

        self._mutate(_apply)
        return ImportResult(added=tuple(added), skipped=tuple(skipped))

    def _mutate(self, action: Callable[[ConnectionRegistry], _T]) -> _T:
        with self._lock:
            snapshot = self._registry.model_copy(deep=True)
            result = action(self._registry)
            try:
                self._persist(self._registry)
            except PersistenceError:
                self._registry = snapshot
                raise
            return result

    def _persist(self, registry: ConnectionRegistry) -> None:
        registry.touch()
        self._store.write(registry.to_json().encode("utf-8"))

    def _load_failed(self, message: str) -> ConnectionRegistry:
        self._report(message)
        with self._lock:
            self._registry = ConnectionRegistry.empty()
        return self.registry

    @contextmanager
    def _reported(self, action: str) -> Iterator[None]:
        try:
            yield
        except DbOpsError as exc:
            self._report(f"Failed to {action}: {exc}")
            raise

    def _report(self, message: str) -> None:
        LOG.warning(message)
        self._bus.publish(ErrorOccurred(message, source="connections"))

    def _publish_registry_changed(self) -> None:
        self._bus.publish(RegistryChanged(self.profiles))


__all__ = ["ConnectionManager", "ImportResult", "SecretLookup", "SecretStatus"]
