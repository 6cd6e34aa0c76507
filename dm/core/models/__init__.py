"""
Domain models — Pydantic types for the version manager.

All models are re-exported here for convenient access:

    from dm.core.models import InstalledVersion, RuntimeStatus, DoctorReport
"""

from dm.core.models.runtime import (
    DoctorCheck,
    DoctorReport,
    ProcessInfo,
    ProcessState,
    RuntimeStatus,
    SetupReport,
)
from dm.core.models.version import (
    AvailableVersion,
    InstalledVersion,
    InstallResult,
    ReleaseAsset,
    ReleaseInfo,
    VersionSpec,
    VersionsReport,
    parse_version_spec,
)

__all__ = [
    # version.py
    "AvailableVersion",
    "InstallResult",
    "InstalledVersion",
    "ReleaseAsset",
    "ReleaseInfo",
    "VersionSpec",
    "VersionsReport",
    "parse_version_spec",
    # runtime.py
    "DoctorCheck",
    "DoctorReport",
    "ProcessInfo",
    "ProcessState",
    "RuntimeStatus",
    "SetupReport",
]
