"""
Version models — specs, releases, and installed versions.

A version spec is what the user typed (``0.4.1``, ``v0.4.1``,
``latest``, or a git ref).  It is validated before any network call.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from dm.core.errors import InvalidVersionSpec

LATEST = "latest"
REF_SLASH = "%2F"

_TAG_RE = re.compile(r"^v?\d+(\.\d+){0,2}([-+][0-9A-Za-z.\-]+)?$")
_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/\-]*$")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class VersionSpec(BaseModel):
    """A validated version request."""

    raw: str
    kind: Literal["latest", "tag", "ref"]

    @property
    def is_latest(self) -> bool:
        return self.kind == "latest"

    @property
    def tag(self) -> str:
        """Release tag form (``v0.4.1``) for tag specs."""
        if self.kind != "tag":
            return self.raw
        return self.raw if self.raw.startswith("v") else f"v{self.raw}"

    @property
    def version(self) -> str:
        """Directory name under versions/ (``0.4.1``, ``feature%2Fzenoh``).

        Slashes in git refs are percent-escaped.  ``%`` never appears in
        a valid spec, so distinct refs never share a directory.
        """
        if self.kind == "tag":
            return self.raw.removeprefix("v")
        return self.raw.replace("/", REF_SLASH)

    def __str__(self) -> str:
        return self.raw


def parse_version_spec(spec: str | None) -> VersionSpec:
    """Validate a user-supplied version spec.

    ``None`` means latest.  Empty strings, path traversal, and
    characters git would reject are refused.

    Raises:
        InvalidVersionSpec: If the version spec is unusable.
    """
    if spec is None:
        return VersionSpec(raw=LATEST, kind="latest")
    if not isinstance(spec, str):
        raise InvalidVersionSpec(f"Version spec must be a string, not {type(spec).__name__}")

    raw = spec.strip()
    if not raw:
        raise InvalidVersionSpec("Version spec must not be empty")
    if raw.lower() == LATEST:
        return VersionSpec(raw=LATEST, kind="latest")
    if _TAG_RE.match(raw):
        return VersionSpec(raw=raw, kind="tag")
    if ".." in raw or raw.endswith("/") or raw.endswith(".lock") or not _REF_RE.match(raw):
        raise InvalidVersionSpec(f"Invalid version spec: {spec!r}")
    return VersionSpec(raw=raw, kind="ref")


def normalize_version(version: str) -> str:
    """Installed-version key for a user-typed version (``v0.4.1`` → ``0.4.1``).

    Store keys themselves (``feature%2Fzenoh``) are accepted too.
    """
    return parse_version_spec(version.replace(REF_SLASH, "/")).version


class ReleaseAsset(BaseModel):
    name: str
    url: str
    size: int = 0


class ReleaseInfo(BaseModel):
    """A release as published by the remote catalog."""

    tag: str
    assets: list[ReleaseAsset] = Field(default_factory=list)

    @property
    def version(self) -> str:
        return self.tag.removeprefix("v")


class InstalledVersion(BaseModel):
    """One directory under <home>/versions/."""

    version: str
    path: Path
    binary_path: Path
    installed_at: str = Field(default_factory=_now_iso)
    method: Literal["binary", "source", "unknown"] = "unknown"
    active: bool = False


class InstallResult(BaseModel):
    installed: InstalledVersion
    method: Literal["binary", "source", "existing"]
    already_installed: bool = False
    set_active: bool = False

    @property
    def version(self) -> str:
        return self.installed.version


class AvailableVersion(BaseModel):
    tag: str
    installed: bool = False


class VersionsReport(BaseModel):
    installed: list[InstalledVersion] = Field(default_factory=list)
    available: list[AvailableVersion] = Field(default_factory=list)
