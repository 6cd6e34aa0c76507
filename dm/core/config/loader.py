"""
Configuration loader — reads <home>/config.toml into DmConfig.

The config file holds the active version pointer plus user settings
for the installer and the runtime supervisor.  Writes are atomic so a
concurrent reader always sees a complete file.

Home directory precedence:
    --home flag  >  DM_HOME env var  >  ~/.dm
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import toml
from pydantic import BaseModel, Field, ValidationError

from dm.core.errors import ConfigError
from dm.core.persistence.atomic_file import atomic_write_text

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.toml"
VERSIONS_DIR = "versions"
RUN_DIR = "run"
LOCKS_DIR = "locks"
EVENTS_FILE = "events.ndjson"


class InstallSettings(BaseModel):
    """Where releases come from and how long we wait for them."""

    repository: str = "dora-rs/dora"
    git_url: str = "https://github.com/dora-rs/dora.git"
    api_url: str = "https://api.github.com"
    http_timeout: float = 30.0
    build_timeout: float = 3600.0


class RuntimeSettings(BaseModel):
    """Coordinator/daemon addressing and supervision timeouts."""

    interface: str = "127.0.0.1"
    coordinator_port: int = 53290
    control_port: int = 6012
    ready_timeout: float = 10.0
    stop_grace: float = 5.0
    daemon_settle: float = 1.0


class DmConfig(BaseModel):
    """Persistent configuration stored at <home>/config.toml."""

    active_version: str | None = None
    install: InstallSettings = Field(default_factory=InstallSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)


# ── Paths ───────────────────────────────────────────────────────


def resolve_home(flag: str | Path | None = None) -> Path:
    """Resolve the dm home directory."""
    if flag:
        return Path(flag).expanduser()
    env_home = os.environ.get("DM_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".dm"


def config_path(home: Path) -> Path:
    return home / CONFIG_FILE


def versions_dir(home: Path) -> Path:
    return home / VERSIONS_DIR


def run_dir(home: Path) -> Path:
    return home / RUN_DIR


def locks_dir(home: Path) -> Path:
    return home / LOCKS_DIR


def events_path(home: Path) -> Path:
    return home / EVENTS_FILE


# ── Load / save ─────────────────────────────────────────────────


def load_config(home: Path) -> DmConfig:
    """Load config.toml, returning defaults if it doesn't exist.

    Raises:
        ConfigError: If the file exists but is not valid TOML or does
            not match the schema.
    """
    path = config_path(home)
    if not path.is_file():
        logger.debug("No config at %s — using defaults", path)
        return DmConfig()

    try:
        data = toml.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except toml.TomlDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    # An empty string pointer is the same as no pointer
    if data.get("active_version") == "":
        data.pop("active_version")

    try:
        return DmConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}", details=str(e)) from e


def save_config(home: Path, cfg: DmConfig) -> None:
    """Write config.toml atomically."""
    data = cfg.model_dump(mode="json", exclude_none=True)
    atomic_write_text(config_path(home), toml.dumps(data))
    logger.debug("Config saved (active_version=%s)", cfg.active_version)
