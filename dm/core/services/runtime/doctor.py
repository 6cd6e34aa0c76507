"""
Doctor — environment prerequisites for running dora.

Each check inspects one precondition and returns a DoctorCheck.
Checks are independent: one that fails (or crashes) never hides the
others, and ``doctor()`` itself never raises.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable

from dm.core.config.loader import versions_dir
from dm.core.errors import DmError
from dm.core.models.runtime import DoctorCheck, DoctorReport
from dm.core.persistence.events import OperationEvent
from dm.core.services import version_registry as registry
from dm.core.services.process_runner import command_version, which

logger = logging.getLogger(__name__)

PYTHON_CANDIDATES = ("python3", "python")


def check_python() -> DoctorCheck:
    """Python interpreter for dora's Python nodes."""
    for name in PYTHON_CANDIDATES:
        if which(name):
            version = command_version(name) or "unknown version"
            return DoctorCheck(name="python", ok=True, detail=f"{name}: {version}")
    return DoctorCheck(
        name="python",
        ok=False,
        detail="No python3 on PATH",
        suggestion="Install Python 3 from your system package manager",
    )


def check_uv() -> DoctorCheck:
    if which("uv"):
        return DoctorCheck(name="uv", ok=True, detail=command_version("uv") or "found")
    return DoctorCheck(
        name="uv",
        ok=False,
        detail="uv not on PATH",
        suggestion="curl -LsSf https://astral.sh/uv/install.sh | sh",
    )


def check_git() -> DoctorCheck:
    # Only needed for source builds
    if which("git"):
        return DoctorCheck(name="git", ok=True, detail=command_version("git") or "found", required=False)
    return DoctorCheck(
        name="git",
        ok=False,
        detail="git not on PATH (source builds unavailable)",
        required=False,
        suggestion="Install git from your system package manager",
    )


def check_cargo() -> DoctorCheck:
    if which("cargo"):
        return DoctorCheck(
            name="cargo", ok=True, detail=command_version("cargo") or "found", required=False
        )
    return DoctorCheck(
        name="cargo",
        ok=False,
        detail="cargo not on PATH (source builds unavailable)",
        required=False,
        suggestion="curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh",
    )


def check_active_version(home: Path) -> DoctorCheck:
    active = registry.get_active(home)
    if active:
        return DoctorCheck(name="active_version", ok=True, detail=active)
    return DoctorCheck(
        name="active_version",
        ok=False,
        detail="No active version",
        suggestion="dm install",
    )


def check_active_binary(home: Path) -> DoctorCheck:
    try:
        binary = registry.active_binary(home)
    except DmError as e:
        return DoctorCheck(name="active_binary", ok=False, detail=e.message, suggestion="dm install")
    if not os.access(binary, os.X_OK):
        return DoctorCheck(
            name="active_binary",
            ok=False,
            detail=f"{binary} is not executable",
            suggestion=f"chmod +x {binary}",
        )
    return DoctorCheck(name="active_binary", ok=True, detail=str(binary))


def check_home_writable(home: Path) -> DoctorCheck:
    try:
        home.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=home, prefix=".doctor-"):
            pass
    except OSError as e:
        return DoctorCheck(
            name="home_writable",
            ok=False,
            detail=f"{home}: {e.strerror or e}",
            suggestion="Fix permissions or pass --home / set DM_HOME",
        )
    return DoctorCheck(name="home_writable", ok=True, detail=str(home))


def check_path_entry(home: Path) -> DoctorCheck:
    """Whether ``dora`` on PATH is the managed binary (informational)."""
    found = which(registry.binary_name())
    if not found:
        return DoctorCheck(
            name="path_entry",
            ok=False,
            detail="dora not on PATH; use `dm exec -- ...`",
            required=False,
        )
    managed = versions_dir(home).resolve()
    if Path(found).resolve().is_relative_to(managed):
        return DoctorCheck(name="path_entry", ok=True, detail=found, required=False)
    return DoctorCheck(
        name="path_entry",
        ok=False,
        detail=f"{found} is not managed by dm",
        required=False,
    )


def _run_check(name: str, fn: Callable[[], DoctorCheck]) -> DoctorCheck:
    try:
        return fn()
    except Exception as e:
        logger.warning("Doctor check %s crashed: %s", name, e)
        return DoctorCheck(name=name, ok=False, detail=f"Check failed: {e}")


def doctor(home: Path) -> DoctorReport:
    """Run every check against ``home``.  Never raises."""
    report = DoctorReport()
    checks: list[tuple[str, Callable[[], DoctorCheck]]] = [
        ("python", check_python),
        ("uv", check_uv),
        ("git", check_git),
        ("cargo", check_cargo),
        ("active_version", lambda: check_active_version(home)),
        ("active_binary", lambda: check_active_binary(home)),
        ("home_writable", lambda: check_home_writable(home)),
        ("path_entry", lambda: check_path_entry(home)),
    ]

    try:
        with OperationEvent(home, "doctor") as op:
            for name, fn in checks:
                report.add(_run_check(name, fn))
            try:
                report.active_version = registry.get_active(home)
                report.installed_versions = [v.version for v in registry.list_versions(home)]
            except DmError as e:
                logger.debug("Cannot list versions for doctor: %s", e)
            op.attrs["all_ok"] = report.all_ok
    except Exception as e:
        logger.warning("Doctor aborted: %s", e)
    return report
