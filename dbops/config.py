"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import tomllib

import pydantic
from pydantic import BaseModel, Field

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "dbops" / "config.toml"
APP_DIR_NAME = "DbOps"
CONNECTIONS_FILE_NAME = "connections.json"


def app_data_dir() -> Path:
    """Per-user application data root (``%APPDATA%`` or the XDG config home)."""

    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".config"


def default_connections_file() -> Path:
    return app_data_dir() / APP_DIR_NAME / CONNECTIONS_FILE_NAME


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    connections_file: Path | None = None
    connect_timeout: float = Field(default=10.0, gt=0, le=30)
    command_timeout: float = Field(default=10.0, gt=0, le=30)
    test_timeout: float = Field(default=30.0, gt=0, le=30)
    failover_on_refresh_failure: bool = False

    def resolved_connections_file(self) -> Path:
        """Registry path, defaulting to ``<app-data-dir>/DbOps/connections.json``."""

        if self.connections_file is not None:
            return self.connections_file.expanduser()
        return default_connections_file()

    def with_connections_file(self, path: Path) -> AppConfig:
        """Return a copy pointing at a different registry file."""

        return self.model_copy(update={"connections_file": path})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        return AppConfig()

    try:
        return AppConfig(**data)
    except pydantic.ValidationError as exc:
        LOG.warning("Ignoring invalid config values", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        return AppConfig()


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    connections_file = raw.get("connections_file")
    if isinstance(connections_file, str) and connections_file:
        data["connections_file"] = Path(connections_file)
    for key in ("connect_timeout", "command_timeout", "test_timeout"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = float(value)
    failover = raw.get("failover_on_refresh_failure")
    if isinstance(failover, bool):
        data["failover_on_refresh_failure"] = failover
    return data


__all__ = ["AppConfig", "CONFIG_FILE", "app_data_dir", "default_connections_file", "load_config"]
