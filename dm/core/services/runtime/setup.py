"""
Setup — bring a fresh machine to a runnable dora.

Checks python and uv, installs uv with pip when it is missing, and
installs the latest dora release when no version is active.  Each step
is reported in the returned SetupReport; only a crash outside the
steps propagates.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from dm.core.errors import DmError
from dm.core.models.runtime import SetupReport
from dm.core.persistence.events import OperationEvent
from dm.core.services import version_registry as registry
from dm.core.services.install import install
from dm.core.services.install.progress import ProgressCallback
from dm.core.services.process_runner import run_process, which
from dm.core.services.runtime.doctor import PYTHON_CANDIDATES, check_python, check_uv

logger = logging.getLogger(__name__)

_PIP_TIMEOUT = 300.0


def _pip_install_uv() -> list[str] | None:
    if which("pip3"):
        return ["pip3", "install", "uv"]
    for name in PYTHON_CANDIDATES:
        if which(name):
            return [name, "-m", "pip", "install", "uv"]
    return None


def install_uv() -> bool:
    """``pip install uv``; True once uv is on PATH."""
    cmd = _pip_install_uv()
    if cmd is None:
        logger.warning("Cannot install uv: no pip3 or python on PATH")
        return False

    logger.info("Installing uv: %s", " ".join(cmd))
    result = run_process(cmd, on_line=lambda line: logger.debug("pip: %s", line), timeout=_PIP_TIMEOUT)
    if not result.ok:
        logger.warning("uv install failed: %s\n%s", result.error, result.output_tail)
        return False
    return which("uv") is not None


def setup(
    home: Path,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
) -> SetupReport:
    """Check prerequisites and install what is missing.

    Args:
        home: dm home directory.
        progress: Receives the dora install's progress events.
        cancel: Aborts the dora install at its next progress event.

    Returns:
        SetupReport; ``ok`` is True when python and uv are present
        and a dora version is active.
    """
    report = SetupReport()

    with OperationEvent(home, "setup") as op:
        report.checks["python"] = check_python()
        report.checks["uv"] = check_uv()

        if not report.uv_installed and report.python_installed:
            report.uv_installed_now = install_uv()
            report.checks["uv"] = check_uv()

        report.dora_version = registry.get_active(home)
        if report.dora_version is None:
            try:
                result = install(home, None, progress, cancel)
            except DmError as e:
                logger.warning("dora install during setup failed: %s", e)
                report.dora_error = e.to_dict()
            else:
                report.dora_version = result.version
                report.dora_installed_now = not result.already_installed
                if not result.installed.active:
                    registry.set_active(home, result.version)

        op.attrs["ok"] = report.ok
        return report
