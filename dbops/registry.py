"""In-memory connection registry and its default-profile invariants."""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .models import ConnectionProfile, as_utc, generate_id, utcnow

CONFIG_VERSION = "1.0"


class ConnectionRegistry(BaseModel):
    """Full persisted state: profiles plus default-selection metadata.

    Every public mutation keeps two invariants: at most one profile carries
    ``is_default`` and ``default_id`` always references it, and a non-empty
    registry always has exactly one default.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(default=CONFIG_VERSION, alias="configVersion")
    default_id: str | None = Field(default=None, alias="defaultConnectionId")
    profiles: list[ConnectionProfile] = Field(default_factory=list, alias="connections")
    last_modified: datetime = Field(default_factory=utcnow, alias="lastModified")

    @classmethod
    def empty(cls) -> ConnectionRegistry:
        return cls(version=CONFIG_VERSION, profiles=[])

    @classmethod
    def from_json(cls, payload: bytes | str) -> ConnectionRegistry:
        """Parse the on-disk JSON document (raises ``pydantic.ValidationError``)."""

        return cls.model_validate_json(payload)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @property
    def default_profile(self) -> ConnectionProfile | None:
        if self.default_id:
            return self.find(self.default_id)
        return next((profile for profile in self.profiles if profile.is_default), None)

    def find(self, connection_id: str) -> ConnectionProfile | None:
        for profile in self.profiles:
            if profile.id == connection_id:
                return profile
        return None

    def has_duplicate(self, candidate: ConnectionProfile) -> bool:
        key = candidate.unique_key
        return any(
            profile.id != candidate.id and profile.unique_key == key
            for profile in self.profiles
        )

    def add(self, profile: ConnectionProfile) -> ConnectionProfile:
        """Append `profile`, minting an id and applying default promotion."""

        if not profile.id or self.find(profile.id) is not None:
            profile.id = generate_id()
        if not self.profiles:
            profile.is_default = True
        if profile.is_default:
            self._clear_default_flags()
            self.default_id = profile.id
        self.profiles.append(profile)
        self.touch()
        return profile

    def replace(self, profile: ConnectionProfile) -> bool:
        """Swap in edited fields for an existing id; position and creation time stay."""

        for index, current in enumerate(self.profiles):
            if current.id != profile.id:
                continue
            updated = profile.model_copy(update={"created_at": current.created_at})
            if current.is_default and not updated.is_default:
                updated.is_default = True
            if updated.is_default:
                self._clear_default_flags()
                self.default_id = updated.id
            self.profiles[index] = updated
            self.touch()
            return True
        return False

    def remove(self, connection_id: str) -> bool:
        profile = self.find(connection_id)
        if profile is None:
            return False
        was_default = profile.is_default or self.default_id == connection_id
        self.profiles.remove(profile)
        if not self.profiles:
            self.default_id = None
        elif was_default:
            promoted = self.profiles[0]
            promoted.is_default = True
            self.default_id = promoted.id
        self.touch()
        return True

    def set_default(self, connection_id: str) -> bool:
        profile = self.find(connection_id)
        if profile is None:
            return False
        self._clear_default_flags()
        profile.is_default = True
        self.default_id = connection_id
        self.touch()
        return True

    def mark_used(self, connection_id: str, when: datetime | None = None) -> bool:
        profile = self.find(connection_id)
        if profile is None:
            return False
        profile.last_used_at = as_utc(when) if when is not None else utcnow()
        self.touch()
        return True

    def sorted_by_usage(self) -> list[ConnectionProfile]:
        """Order by default first, then most recently used, then name."""

        by_name = sorted(self.profiles, key=lambda profile: profile.name)
        by_recency = sorted(by_name, key=lambda profile: profile.last_used_at, reverse=True)
        return sorted(by_recency, key=lambda profile: profile.is_default, reverse=True)

    def touch(self) -> None:
        self.last_modified = utcnow()

    def validation_errors(self) -> list[str]:
        """Structural problems that make a loaded registry unusable."""

        errors: list[str] = []
        if not self.version:
            errors.append("Configuration version is required")
        if self.default_id and self.find(self.default_id) is None:
            errors.append("Default connection ID references a non-existent connection")
        defaults = [profile for profile in self.profiles if profile.is_default]
        if len(defaults) > 1:
            errors.append("More than one connection is marked as default")
        if self.profiles and not defaults:
            errors.append("No connection is marked as default")
        if len(defaults) == 1 and self.default_id and defaults[0].id != self.default_id:
            errors.append("Default connection ID disagrees with the connection marked as default")
        id_counts = Counter(profile.id for profile in self.profiles)
        for connection_id, count in id_counts.items():
            if count > 1 or not connection_id:
                errors.append(f"Duplicate or missing connection id: '{connection_id}'")
        key_counts = Counter(profile.unique_key for profile in self.profiles)
        for key, count in key_counts.items():
            if count > 1:
                errors.append(f"Duplicate connections found: {key}")
        for index, profile in enumerate(self.profiles, start=1):
            for message in profile.validation_errors().values():
                errors.append(f"Connection {index}: {message}")
        return errors

    def _clear_default_flags(self) -> None:
        for profile in self.profiles:
            profile.is_default = False


__all__ = ["CONFIG_VERSION", "ConnectionRegistry"]
