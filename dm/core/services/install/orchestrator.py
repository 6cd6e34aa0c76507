"""
Install orchestrator — spec → release → binary → version store.

    resolving ─┬─ downloading ─┬─ extracting → installing → done
               └──── building ─┘

1. Resolve the version spec against the release catalog.  An exact tag that is
   already installed short-circuits before any network request.
2. Download the platform asset, or fall back to a source build when
   there is no asset, the catalog is unreachable, or the download fails.
3. Extract the artifact and locate exactly one binary.
4. Stage the version directory next to its final location and rename
   it into place, so ``versions/<v>`` is either complete or absent.

Concurrent installs of the same version are serialized by a per-version
file lock; the loser sees the winner's directory and reports
``already_installed`` without downloading anything.
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Iterator

from dm.core.config.loader import DmConfig, load_config, versions_dir
from dm.core.errors import (
    DmError,
    NetworkError,
    PermissionDenied,
    UnsupportedPlatform,
)
from dm.core.models.version import (
    InstalledVersion,
    InstallResult,
    ReleaseInfo,
    VersionSpec,
    parse_version_spec,
)
from dm.core.persistence.events import OperationEvent
from dm.core.services import version_registry as registry
from dm.core.services.install import archive
from dm.core.services.install.download import download_asset
from dm.core.services.install.platform import PlatformTarget, resolve_target
from dm.core.services.install.progress import (
    InstallProgress,
    InstallStage,
    ProgressCallback,
    ProgressReporter,
)
from dm.core.services.install.release_client import ReleaseClient, select_asset
from dm.core.services.install.source_build import build_from_source

logger = logging.getLogger(__name__)


# '@' never appears in a version, so prefixes cannot collide
def _staging_prefix(version: str) -> str:
    return f"{registry.STAGING_PREFIX}{version}@"


def _trash_prefix(version: str) -> str:
    return f"{registry.TRASH_PREFIX}{version}@"


def _client_for(cfg: DmConfig) -> ReleaseClient:
    s = cfg.install
    return ReleaseClient(s.repository, api_url=s.api_url, timeout=s.http_timeout)


def _ensure_writable(home: Path) -> Path:
    root = versions_dir(home)
    try:
        root.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise PermissionDenied(f"Cannot create {root}: {e}") from e
    if not os.access(root, os.W_OK | os.X_OK):
        raise PermissionDenied(f"{root} is not writable")
    return root


def _already_installed(
    installed: InstalledVersion, reporter: ProgressReporter
) -> InstallResult:
    reporter.emit(InstallStage.DONE, f"dora {installed.version} is already installed.")
    return InstallResult(installed=installed, method="existing", already_installed=True)


def _cleanup_leftovers(home: Path, version: str) -> None:
    """Remove staging/trash dirs of ``version`` left by a crashed run.

    Called under the version lock, so none of them belong to a live run.
    """
    root = versions_dir(home)
    prefixes = (_staging_prefix(version), _trash_prefix(version))
    for entry in root.iterdir():
        if entry.is_dir() and entry.name.startswith(prefixes):
            logger.info("Removing leftover %s", entry.name)
            shutil.rmtree(entry, ignore_errors=True)

    # A directory without a binary is debris, not an install
    target = registry.version_dir(home, version)
    if target.exists() and registry.get_installed(home, version) is None:
        logger.warning("Discarding incomplete version directory %s", target)
        trash = root / f"{_trash_prefix(version)}debris"
        os.replace(target, trash)
        shutil.rmtree(trash, ignore_errors=True)


def _resolve_platform() -> PlatformTarget | None:
    try:
        return resolve_target()
    except UnsupportedPlatform as e:
        logger.info("%s — will build from source", e)
        return None


def _acquire_artifact(
    release: ReleaseInfo | None,
    ref: str,
    staging: Path,
    reporter: ProgressReporter,
    cfg: DmConfig,
) -> tuple[Path, str, str]:
    """Download the platform asset, or build from source.

    Returns:
        (artifact path, method, source) where method is ``binary`` or
        ``source`` and source is the asset URL or ``<git url>@<ref>``.
    """
    binary = registry.binary_name()
    target = _resolve_platform()

    reason = "No release metadata available"
    if release is not None and target is not None:
        asset = select_asset(release, target)
        if asset is not None:
            dl_dir = staging / "download"
            dl_dir.mkdir()
            try:
                path = download_asset(
                    asset.url,
                    dl_dir / asset.name,
                    reporter,
                    expected_size=asset.size,
                    timeout=cfg.install.http_timeout,
                )
                return path, "binary", asset.url
            except NetworkError as e:
                logger.warning("Download of %s failed (%s) — building from source", asset.name, e)
                reason = f"Download failed: {e}"
        else:
            reason = f"No binary release for {target.key}"
    elif target is None:
        reason = "No binary releases for this platform"

    reporter.emit(InstallStage.BUILDING, f"{reason}. Building from source...")
    build_dir = staging / "build"
    build_dir.mkdir()
    built = build_from_source(ref, build_dir, reporter, cfg.install, binary_name=binary)
    return built, "source", f"{cfg.install.git_url}@{ref}"


def _install_locked(
    home: Path,
    version: str,
    ref: str,
    release: ReleaseInfo | None,
    reporter: ProgressReporter,
    cfg: DmConfig,
) -> InstalledVersion:
    root = versions_dir(home)
    binary = registry.binary_name()
    staging = Path(tempfile.mkdtemp(prefix=_staging_prefix(version), dir=root))
    try:
        artifact, method, source = _acquire_artifact(release, ref, staging, reporter, cfg)

        reporter.emit(InstallStage.EXTRACTING, f"Extracting {artifact.name}...")
        extracted = staging / "extract"
        archive.extract(artifact, extracted, binary_name=binary)
        found = archive.locate_binary(extracted, binary)

        reporter.emit(InstallStage.INSTALLING, f"Installing dora {version}...")
        staged_version = staging / "version"
        staged_version.mkdir()
        staged_binary = staged_version / binary
        shutil.move(str(found), staged_binary)
        archive.verify_runnable(staged_binary)

        final_dir = registry.version_dir(home, version)
        installed = InstalledVersion(
            version=version,
            path=final_dir,
            binary_path=final_dir / binary,
            method=method,
        )
        registry.write_metadata(staged_version, installed, source=source)

        # The commit point: versions/<v> appears complete or not at all
        os.rename(staged_version, final_dir)
        logger.info("Installed dora %s (%s) at %s", version, method, final_dir)
        return installed
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def install(
    home: Path,
    spec: str | None = None,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
    *,
    activate_if_none: bool = True,
    client: ReleaseClient | None = None,
) -> InstallResult:
    """Install a dora version into ``home``.

    Args:
        home: dm home directory.
        spec: ``None``/``"latest"``, a release tag, or a git ref.
        progress: Called with every InstallProgress event.
        cancel: Set it to abort at the next progress event.
        activate_if_none: Make this the active version if none is set.
        client: Release client override (tests, mirrors).

    Returns:
        InstallResult; ``already_installed`` is True for a no-op.

    Raises:
        InvalidVersionSpec, VersionNotFound, NetworkError, ToolchainMissing,
        BuildFailed, AmbiguousArtifact, ArchiveError, PermissionDenied,
        InstallCancelled.
    """
    parsed = parse_version_spec(spec)
    reporter = ProgressReporter(progress, cancel)

    with OperationEvent(home, "version.install", spec=parsed.raw) as op:
        cfg = load_config(home)
        _ensure_writable(home)
        reporter.emit(InstallStage.RESOLVING, f"Resolving {parsed.raw}...")

        if parsed.is_latest:
            # Only the catalog knows what "latest" is
            release = (client or _client_for(cfg)).fetch_release(parsed)
            result = _install_version(
                home, release.version, release.tag, parsed, release, reporter, cfg, client
            )
        else:
            result = _install_version(
                home, parsed.version, parsed.tag, parsed, None, reporter, cfg, client
            )

        op.attrs["version"] = result.version
        op.attrs["method"] = result.method

        if activate_if_none and not result.already_installed:
            with registry.version_lock(home, result.version):
                if registry.get_installed(home, result.version) is not None:
                    result.set_active = registry.set_active(
                        home, result.version, only_if_unset=True
                    )
            result.installed.active = result.set_active or registry.get_active(home) == result.version
        return result


def _install_version(
    home: Path,
    version: str,
    ref: str,
    parsed: VersionSpec,
    release: ReleaseInfo | None,
    reporter: ProgressReporter,
    cfg: DmConfig,
    client: ReleaseClient | None,
) -> InstallResult:
    existing = registry.get_installed(home, version)
    if existing is not None:
        return _already_installed(existing, reporter)

    with registry.version_lock(home, version):
        existing = registry.get_installed(home, version)
        if existing is not None:
            return _already_installed(existing, reporter)
        _cleanup_leftovers(home, version)

        if release is None and parsed.kind == "tag":
            try:
                release = (client or _client_for(cfg)).fetch_release(parsed)
                ref = release.tag
            except NetworkError as e:
                # A clone by tag may still work without the API
                logger.warning("Release lookup failed (%s) — trying a source build", e)

        installed = _install_locked(home, version, ref, release, reporter, cfg)

    reporter.emit(InstallStage.DONE, f"dora {version} installed successfully.")
    return InstallResult(installed=installed, method=installed.method)


class InstallRun:
    """Run an install on a worker thread and iterate its progress.

    Usage::

        run = InstallRun(home, "0.4.1")
        for event in run:
            print(event.stage, event.detail)
        result = run.result()     # raises the install's DmError, if any

    Breaking out of the loop early does not stop the install; call
    ``cancel()`` for that.
    """

    _SENTINEL = object()

    def __init__(self, home: Path, spec: str | None = None, **kwargs):
        self._events: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._result: InstallResult | None = None
        self._error: DmError | None = None
        self._thread = threading.Thread(
            target=self._run, args=(home, spec), kwargs=kwargs,
            name=f"dm-install-{spec or 'latest'}", daemon=True,
        )
        self._thread.start()

    def _run(self, home: Path, spec: str | None, **kwargs) -> None:
        try:
            self._result = install(home, spec, self._events.put, self._cancel, **kwargs)
        except DmError as e:
            self._error = e
        except Exception as e:
            logger.exception("Install crashed")
            self._error = DmError(f"Install crashed: {e}")
        finally:
            self._events.put(self._SENTINEL)

    def __iter__(self) -> Iterator[InstallProgress]:
        while True:
            event = self._events.get()
            if event is self._SENTINEL:
                return
            yield event

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def result(self) -> InstallResult:
        self._thread.join()
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result
