"""
Runtime models — process liveness and environment diagnostics.

Both are recomputed on every query.  The coordinator and daemon are
external processes that can die at any time, so nothing here is
cached across calls.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProcessState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class ProcessInfo(BaseModel):
    state: ProcessState = ProcessState.STOPPED
    pid: int | None = None
    owned: bool = False             # spawned by this process
    started_at: str | None = None


class RuntimeStatus(BaseModel):
    coordinator: ProcessInfo = Field(default_factory=ProcessInfo)
    daemon: ProcessInfo = Field(default_factory=ProcessInfo)
    active_version: str | None = None
    home: str = ""
    # Filled only while the coordinator runs
    actual_version: str | None = None
    runtime_output: str = ""
    dataflows: list[str] = Field(default_factory=list)

    @property
    def running(self) -> bool:
        return (
            self.coordinator.state == ProcessState.RUNNING
            and self.daemon.state == ProcessState.RUNNING
        )

    @property
    def stopped(self) -> bool:
        return (
            self.coordinator.state == ProcessState.STOPPED
            and self.daemon.state == ProcessState.STOPPED
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["running"] = self.running
        return data


class DoctorCheck(BaseModel):
    """Result of one independent prerequisite check."""

    name: str
    ok: bool
    detail: str = ""
    required: bool = True
    suggestion: str | None = None


class DoctorReport(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    checks: dict[str, DoctorCheck] = Field(default_factory=dict)
    active_version: str | None = None
    installed_versions: list[str] = Field(default_factory=list)

    def add(self, check: DoctorCheck) -> None:
        self.checks[check.name] = check

    @property
    def all_ok(self) -> bool:
        return all(c.ok for c in self.checks.values() if c.required)

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["all_ok"] = self.all_ok
        return data


class SetupReport(BaseModel):
    """What ``setup`` found, and what it installed on the way."""

    checks: dict[str, DoctorCheck] = Field(default_factory=dict)
    uv_installed_now: bool = False
    dora_version: str | None = None
    dora_installed_now: bool = False
    dora_error: dict[str, Any] | None = None

    @property
    def python_installed(self) -> bool:
        return self._ok("python")

    @property
    def uv_installed(self) -> bool:
        return self._ok("uv")

    @property
    def dora_installed(self) -> bool:
        return self.dora_version is not None

    @property
    def ok(self) -> bool:
        return self.python_installed and self.uv_installed and self.dora_installed

    def _ok(self, name: str) -> bool:
        check = self.checks.get(name)
        return check is not None and check.ok

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data.update(
            python_installed=self.python_installed,
            uv_installed=self.uv_installed,
            dora_installed=self.dora_installed,
            ok=self.ok,
        )
        return data
