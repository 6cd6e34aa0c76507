"""
Version registry — installed versions and the active pointer.

On-disk layout::

    <home>/config.toml                      active_version = "0.4.1"
    <home>/versions/<version>/dora          the binary
    <home>/versions/<version>/.install.json install metadata
    <home>/locks/<version>.lock             per-version mutation lock

A version directory only ever appears by rename of a fully staged
directory, and disappears by rename to a trash name before deletion,
so anything listed here is complete.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from filelock import FileLock

from dm.core.config.loader import load_config, locks_dir, save_config, versions_dir
from dm.core.errors import (
    BinaryMissing,
    InUse,
    NetworkError,
    NoActiveVersion,
    NotInstalled,
    VersionNotFound,
)
from dm.core.models.version import (
    AvailableVersion,
    InstalledVersion,
    VersionsReport,
    normalize_version,
)
from dm.core.persistence.atomic_file import atomic_write_text
from dm.core.persistence.events import OperationEvent
from dm.core.services.install.release_client import ReleaseClient
from dm.core.services.process_runner import run_process

logger = logging.getLogger(__name__)

METADATA_FILE = ".install.json"
STAGING_PREFIX = ".staging-"
TRASH_PREFIX = ".trash-"
LOCK_TIMEOUT = 600.0


def binary_name() -> str:
    return "dora.exe" if os.name == "nt" else "dora"


def version_dir(home: Path, version: str) -> Path:
    return versions_dir(home) / version


# ── Locks ───────────────────────────────────────────────────────


def version_lock(home: Path, version: str, timeout: float = LOCK_TIMEOUT) -> FileLock:
    """Lock serializing install/uninstall of one version."""
    lock_dir = locks_dir(home)
    lock_dir.mkdir(parents=True, exist_ok=True)
    return FileLock(str(lock_dir / f"{version}.lock"), timeout=timeout)


@contextmanager
def config_lock(home: Path) -> Iterator[None]:
    """Serialize read-modify-write cycles on config.toml."""
    lock_dir = locks_dir(home)
    lock_dir.mkdir(parents=True, exist_ok=True)
    with FileLock(str(lock_dir / "config.lock"), timeout=30):
        yield


# ── Metadata ────────────────────────────────────────────────────


def write_metadata(directory: Path, installed: InstalledVersion, source: str = "") -> None:
    data = {
        "version": installed.version,
        "installed_at": installed.installed_at,
        "method": installed.method,
        "source": source,
        "binary": installed.binary_path.name,
    }
    atomic_write_text(directory / METADATA_FILE, json.dumps(data, indent=2) + "\n")


def _read_installed(directory: Path, active: str | None) -> InstalledVersion | None:
    binary = directory / binary_name()
    if not binary.is_file():
        return None

    meta: dict = {}
    meta_path = directory / METADATA_FILE
    if meta_path.is_file():
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable install metadata in %s: %s", directory, e)

    installed_at = meta.get("installed_at")
    if not installed_at:
        installed_at = datetime.fromtimestamp(binary.stat().st_mtime, UTC).isoformat()
    method = meta.get("method")
    if method not in ("binary", "source"):
        method = "unknown"

    return InstalledVersion(
        version=directory.name,
        path=directory,
        binary_path=binary,
        installed_at=installed_at,
        method=method,
        active=directory.name == active,
    )


# ── Queries ─────────────────────────────────────────────────────


def get_active(home: Path) -> str | None:
    return load_config(home).active_version


def get_installed(home: Path, version: str) -> InstalledVersion | None:
    return _read_installed(version_dir(home, version), get_active(home))


def list_versions(home: Path) -> list[InstalledVersion]:
    """Installed versions, oldest install first."""
    with OperationEvent(home, "versions.list"):
        root = versions_dir(home)
        if not root.is_dir():
            return []

        active = get_active(home)
        found = []
        for entry in root.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            installed = _read_installed(entry, active)
            if installed is not None:
                found.append(installed)
        found.sort(key=lambda v: (v.installed_at, v.version))
        return found


def active_binary(home: Path) -> Path:
    """Path to the active version's binary.

    Raises:
        NoActiveVersion: No version has been activated.
        BinaryMissing: The active version's directory lost its binary.
    """
    version = get_active(home)
    if not version:
        raise NoActiveVersion()
    binary = version_dir(home, version) / binary_name()
    if not binary.is_file():
        raise BinaryMissing(
            f"dora binary not found at {binary}. Run `dm install {version}` to fix."
        )
    return binary


def binary_version(binary: Path) -> str | None:
    """Version reported by ``dora --version`` (last token of the first line)."""
    result = run_process([str(binary), "--version"], timeout=10)
    if not result.ok:
        return None
    first = next((line for line in result.output_tail.splitlines() if line.strip()), "")
    parts = first.split()
    return parts[-1] if parts else None


# ── Mutations ───────────────────────────────────────────────────


def set_active(home: Path, version: str | None, *, only_if_unset: bool = False) -> bool:
    """Rewrite the active pointer.  Returns True if it changed."""
    with config_lock(home):
        cfg = load_config(home)
        if only_if_unset and cfg.active_version:
            return False
        if cfg.active_version == version:
            return False
        cfg.active_version = version
        save_config(home, cfg)
    logger.info("Active version → %s", version)
    return True


def use_version(home: Path, spec: str) -> InstalledVersion:
    """Make ``spec`` the active version.

    Raises:
        NotInstalled: The version is not in the store.
    """
    version = normalize_version(spec)
    with OperationEvent(home, "version.switch", version=version):
        # Same lock as uninstall: the version cannot vanish before the pointer moves
        with version_lock(home, version):
            installed = get_installed(home, version)
            if installed is None:
                raise NotInstalled(version)
            set_active(home, version)
        installed.active = True
        return installed


def uninstall(home: Path, spec: str, *, force: bool = False) -> InstalledVersion:
    """Remove an installed version.

    The active version is refused unless ``force``; forcing it also
    clears the active pointer.

    Raises:
        NotInstalled: The version is not in the store.
        InUse: The version is active and ``force`` is False.
    """
    version = normalize_version(spec)
    with OperationEvent(home, "version.uninstall", version=version, force=force):
        with version_lock(home, version):
            installed = get_installed(home, version)
            if installed is None:
                raise NotInstalled(version)

            with config_lock(home):
                cfg = load_config(home)
                installed.active = cfg.active_version == version
                if installed.active:
                    if not force:
                        raise InUse(version)
                    cfg.active_version = None
                    save_config(home, cfg)
                    logger.info("Active version → None")

            trash = versions_dir(home) / f"{TRASH_PREFIX}{version}@{uuid.uuid4().hex[:8]}"
            os.replace(installed.path, trash)
            shutil.rmtree(trash, ignore_errors=True)
            logger.info("Uninstalled %s", version)
            return installed


def versions_report(home: Path, client: ReleaseClient | None = None) -> VersionsReport:
    """Installed versions plus recent releases (empty when offline)."""
    installed = list_versions(home)
    names = {v.version for v in installed}

    if client is None:
        settings = load_config(home).install
        client = ReleaseClient(
            settings.repository, api_url=settings.api_url, timeout=settings.http_timeout
        )
    try:
        tags = client.list_releases()
    except (NetworkError, VersionNotFound) as e:
        logger.info("Cannot list available releases: %s", e)
        tags = []

    available = [
        AvailableVersion(tag=t.removeprefix("v"), installed=t.removeprefix("v") in names)
        for t in tags
    ]
    return VersionsReport(installed=installed, available=available)
