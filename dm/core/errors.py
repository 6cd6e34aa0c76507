"""
Error taxonomy — the typed outcomes of every engine operation.

Every failure the engine surfaces is a ``DmError`` subclass carrying a
``category`` and a stable ``code``.  Front ends branch on these, never
on message text:

    user         bad input or state the user can fix by asking differently
    transient    network trouble; the caller may retry
    environment  missing tool, unwritable home, lost binary
    internal     invariant violated mid-operation (rolled back first)
"""

from __future__ import annotations

from typing import Any

USER = "user"
TRANSIENT = "transient"
ENVIRONMENT = "environment"
INTERNAL = "internal"


class DmError(Exception):
    """Base class for all engine errors."""

    category: str = INTERNAL
    code: str = "error"

    def __init__(self, message: str, *, details: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.category == TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "category": self.category,
            "details": self.details,
        }


# ── User errors ─────────────────────────────────────────────────


class UserError(DmError):
    category = USER
    code = "user_error"


class ConfigError(UserError):
    """Raised when config.toml is unreadable or invalid."""

    code = "config_error"


class InvalidVersionSpec(UserError):
    code = "invalid_version_spec"


class VersionNotFound(UserError):
    """The release catalog has no release for the requested spec."""

    code = "not_found"


class NotInstalled(UserError):
    code = "not_installed"

    def __init__(self, version: str) -> None:
        super().__init__(
            f"Version {version} is not installed. Run `dm install {version}` first."
        )
        self.version = version


class InUse(UserError):
    code = "in_use"

    def __init__(self, version: str) -> None:
        super().__init__(
            f"Cannot uninstall active version {version}. "
            "Run `dm use <other>` first, or pass --force."
        )
        self.version = version


class NoActiveVersion(UserError):
    code = "no_active_version"

    def __init__(self) -> None:
        super().__init__("No active dora version. Run `dm install` first.")


class AlreadyRunning(UserError):
    code = "already_running"


class NotRunning(UserError):
    code = "not_running"


class InstallCancelled(UserError):
    code = "cancelled"


# ── Transient errors ────────────────────────────────────────────


class NetworkError(DmError):
    category = TRANSIENT
    code = "network_error"


# ── Environment errors ──────────────────────────────────────────


class EnvironmentProblem(DmError):
    category = ENVIRONMENT
    code = "environment_error"


class ToolchainMissing(EnvironmentProblem):
    code = "toolchain_missing"

    def __init__(self, missing: list[str], *, suggestion: str = "") -> None:
        super().__init__(
            f"Build toolchain not available: {', '.join(missing)}",
            details=suggestion,
        )
        self.missing = missing


class PermissionDenied(EnvironmentProblem):
    code = "permission_denied"


class BinaryMissing(EnvironmentProblem):
    code = "binary_missing"


class UnsupportedPlatform(EnvironmentProblem):
    """No release asset naming exists for this OS/CPU combination."""

    code = "unsupported_platform"


# ── Internal errors ─────────────────────────────────────────────


class InternalInvariantError(DmError):
    category = INTERNAL
    code = "internal_error"


class AmbiguousArtifact(InternalInvariantError):
    code = "ambiguous_artifact"

    def __init__(self, message: str, candidates: list[str] | None = None) -> None:
        super().__init__(message, details=", ".join(candidates or []))
        self.candidates = candidates or []


class ArchiveError(InternalInvariantError):
    code = "archive_error"


class BuildFailed(InternalInvariantError):
    code = "build_failed"

    def __init__(self, message: str, output_tail: str = "") -> None:
        super().__init__(message, details=output_tail)
        self.output_tail = output_tail


class SpawnError(InternalInvariantError):
    """A managed process could not be started (or died while starting)."""

    code = "spawn_error"

    def __init__(self, process: str, message: str, *, details: str = "") -> None:
        super().__init__(f"{process}: {message}", details=details)
        self.process = process

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["process"] = self.process
        return data


class StopError(InternalInvariantError):
    code = "stop_error"

    def __init__(self, process: str, message: str, *, details: str = "") -> None:
        super().__init__(f"{process}: {message}", details=details)
        self.process = process

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["process"] = self.process
        return data
