"""
Install service — package re-exports.

Layers, bottom-up::

    progress / platform      stage ordering, host → target triple
    release_client           GitHub releases catalog
    download / archive       fetch and unpack one artifact
    source_build             git clone + cargo build fallback
    orchestrator             spec → installed version
"""

from dm.core.services.install.orchestrator import InstallRun, install  # noqa: F401
from dm.core.services.install.platform import PlatformTarget, resolve_target  # noqa: F401
from dm.core.services.install.progress import (  # noqa: F401
    InstallProgress,
    InstallStage,
    ProgressReporter,
)
from dm.core.services.install.release_client import (  # noqa: F401
    ReleaseClient,
    clear_release_cache,
    select_asset,
)
