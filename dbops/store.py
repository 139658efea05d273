"""Crash-safe file persistence for the connection registry."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from .errors import PersistenceError

LOG = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"


class ConnectionStore:
    """Reads and atomically replaces a single file.

    A write never leaves a half-written target: bytes land in a temporary
    sibling first, the previous generation is copied to ``<name>.bak`` and the
    temporary file is then renamed over the target.
    """

    def __init__(self, path: Path | str, *, backup: bool = True) -> None:
        self._path = Path(path)
        self._backup = backup

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + BACKUP_SUFFIX)

    def exists(self) -> bool:
        return self._path.is_file()

    def read(self) -> bytes | None:
        """Return the file contents, or ``None`` when the file does not exist."""

        try:
            return self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {self._path}: {exc}") from exc

    def write(self, payload: bytes) -> None:
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=directory)
        except OSError as exc:
            raise PersistenceError(f"Failed to prepare {self._path}: {exc}") from exc

        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            if self._backup and self._path.exists():
                shutil.copy2(self._path, self.backup_path)
            os.replace(temp_path, self._path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to save {self._path}: {exc}") from exc
        LOG.debug("Wrote registry file", extra={"path": str(self._path), "bytes": len(payload)})


__all__ = ["BACKUP_SUFFIX", "ConnectionStore"]
