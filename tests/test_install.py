"""
Tests for the install orchestrator.

Binary installs are served by the local ``catalog``; source builds are
replaced by a stub that drops a fake dora into the build workspace.
"""

import json
import threading
from pathlib import Path

import pytest

from conftest import write_fake_dora
from dm.core.errors import (
    AmbiguousArtifact,
    BuildFailed,
    InstallCancelled,
    InternalInvariantError,
    InvalidVersionSpec,
    NetworkError,
    ToolchainMissing,
    VersionNotFound,
)
from dm.core.models.version import InstallResult
from dm.core.persistence.events import NdjsonEventSink
from dm.core.services import version_registry as registry
from dm.core.services.install import InstallRun, install, orchestrator
from dm.core.services.install.progress import InstallStage, ProgressReporter

S = InstallStage


def _stages(events) -> list[InstallStage]:
    """Stage sequence with consecutive repeats collapsed."""
    out: list[InstallStage] = []
    for event in events:
        if not out or out[-1] != event.stage:
            out.append(event.stage)
    return out


def _store(home: Path) -> list[str]:
    root = home / "versions"
    return sorted(p.name for p in root.iterdir()) if root.is_dir() else []


@pytest.fixture
def fake_build(monkeypatch):
    """Replace the cargo build with a fake that records its calls."""
    calls = []

    def _build(ref, workspace, reporter, settings, *, binary_name="dora"):
        calls.append(ref)
        reporter.emit(S.BUILDING, f"compiling {ref}")
        return write_fake_dora(workspace / "target" / binary_name, ref.removeprefix("v"))

    monkeypatch.setattr(orchestrator, "build_from_source", _build)
    return calls


# ── Binary path ─────────────────────────────────────────────────


class TestBinaryInstall:
    def test_installs_and_activates(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball("1.2.0")})
        events = []

        result = install(dm_home, "1.2.0", events.append)

        assert result.method == "binary"
        assert not result.already_installed
        assert result.set_active
        assert _stages(events) == [S.RESOLVING, S.DOWNLOADING, S.EXTRACTING, S.INSTALLING, S.DONE]
        assert _store(dm_home) == ["1.2.0"]
        assert registry.get_active(dm_home) == "1.2.0"
        assert registry.binary_version(result.installed.binary_path) == "1.2.0"

    def test_metadata_records_source(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})
        install(dm_home, "v1.2.0")

        meta = json.loads((dm_home / "versions" / "1.2.0" / ".install.json").read_text())
        assert meta["version"] == "1.2.0"
        assert meta["method"] == "binary"
        assert meta["source"].endswith(f"/assets/v1.2.0/{host_asset_name}")
        assert meta["binary"] == "dora"

    def test_latest(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.3.0", {host_asset_name: dora_tarball("1.3.0")}, latest=True)
        result = install(dm_home)
        assert result.version == "1.3.0"
        assert _store(dm_home) == ["1.3.0"]

    def test_does_not_replace_existing_active(self, dm_home, catalog, host_asset_name, dora_tarball, make_installed):
        make_installed("1.0.0", active=True)
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})

        result = install(dm_home, "1.2.0")

        assert not result.set_active
        assert not result.installed.active
        assert registry.get_active(dm_home) == "1.0.0"

    def test_records_operation_events(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})
        install(dm_home, "1.2.0")

        events = [e for e in NdjsonEventSink(dm_home / "events.ndjson").read_all() if e.activity == "version.install"]
        assert [e.message for e in events] == ["START", "OK"]
        assert events[-1].attributes["method"] == "binary"


class TestIdempotence:
    def test_second_install_is_a_noop(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})
        install(dm_home, "1.2.0")
        requests_before = len(catalog.requests)
        events = []

        result = install(dm_home, "v1.2.0", events.append)

        assert result.already_installed
        assert result.method == "existing"
        assert len(catalog.requests) == requests_before
        assert _stages(events) == [S.RESOLVING, S.DONE]

    def test_installed_tag_needs_no_network(self, dm_home, make_installed):
        make_installed("1.2.0")
        result = install(dm_home, "1.2.0")
        assert result.already_installed

    def test_concurrent_installs_download_once(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})
        results: list[InstallResult] = []
        errors: list[Exception] = []

        def worker():
            try:
                results.append(install(dm_home, "1.2.0"))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert not errors
        assert len(results) == 4
        assert sum(not r.already_installed for r in results) == 1
        downloads = [r for r in catalog.requests if r.startswith("/assets/")]
        assert len(downloads) == 1
        assert _store(dm_home) == ["1.2.0"]


# ── Failure paths ───────────────────────────────────────────────


class TestFailures:
    def test_invalid_spec(self, dm_home):
        with pytest.raises(InvalidVersionSpec):
            install(dm_home, "../evil")

    def test_unknown_version_fails_fast(self, dm_home, catalog, fake_build):
        with pytest.raises(VersionNotFound):
            install(dm_home, "9.9.9")
        assert fake_build == []
        assert _store(dm_home) == []

    def test_latest_offline_is_network_error(self, dm_home):
        events = []
        with pytest.raises(NetworkError):
            install(dm_home, "latest", events.append)
        assert _stages(events) == [S.RESOLVING]

    def test_missing_toolchain(self, dm_home, catalog, monkeypatch):
        catalog.release("v1.2.0", {"dora-cli-riscv64-unknown-linux-gnu.tar.gz": b"nope"})
        monkeypatch.setattr("dm.core.services.install.source_build.which", lambda tool: None)

        with pytest.raises(ToolchainMissing) as exc:
            install(dm_home, "1.2.0")

        assert exc.value.category == "environment"
        assert set(exc.value.missing) == {"git", "cargo"}
        assert _store(dm_home) == []
        assert registry.get_active(dm_home) is None

    def test_build_failure_rolls_back(self, dm_home, monkeypatch):
        def _broken(ref, workspace, reporter, settings, *, binary_name="dora"):
            (workspace / "half-built").write_text("x")
            raise BuildFailed("cargo build failed: exit 101", output_tail="error[E0425]")

        monkeypatch.setattr(orchestrator, "build_from_source", _broken)
        with pytest.raises(BuildFailed):
            install(dm_home, "main")
        assert _store(dm_home) == []

    def test_ambiguous_archive_rolls_back(self, dm_home, catalog, host_asset_name, tarball):
        catalog.release("v1.2.0", {host_asset_name: tarball({
            "bin/tool-a": (b"#!/bin/sh\n", 0o755),
            "bin/tool-b": (b"#!/bin/sh\n", 0o755),
        })})
        with pytest.raises(AmbiguousArtifact):
            install(dm_home, "1.2.0")
        assert _store(dm_home) == []

    def test_cancel_during_download(self, dm_home, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.2.0", {host_asset_name: dora_tarball()})
        cancel = threading.Event()

        def on_event(event):
            if event.stage == S.DOWNLOADING:
                cancel.set()

        with pytest.raises(InstallCancelled):
            install(dm_home, "1.2.0", on_event, cancel)
        assert _store(dm_home) == []
        assert registry.get_active(dm_home) is None


# ── Source fallback ─────────────────────────────────────────────


class TestSourceFallback:
    def test_git_ref_builds_from_source(self, dm_home, fake_build):
        events = []
        result = install(dm_home, "feature/zenoh", events.append)

        assert fake_build == ["feature/zenoh"]
        assert result.method == "source"
        assert result.version == "feature%2Fzenoh"
        assert _stages(events) == [S.RESOLVING, S.BUILDING, S.EXTRACTING, S.INSTALLING, S.DONE]
        meta = json.loads((dm_home / "versions" / "feature%2Fzenoh" / ".install.json").read_text())
        assert meta["source"] == "https://github.com/dora-rs/dora.git@feature/zenoh"

    def test_slash_and_dash_refs_stay_distinct(self, dm_home, fake_build):
        first = install(dm_home, "feature/zenoh")
        second = install(dm_home, "feature-zenoh")

        assert fake_build == ["feature/zenoh", "feature-zenoh"]
        assert not second.already_installed
        assert first.version != second.version
        assert _store(dm_home) == ["feature%2Fzenoh", "feature-zenoh"]
        assert registry.binary_version(second.installed.binary_path) == "feature-zenoh"

    def test_ref_key_accepted_by_use(self, dm_home, fake_build):
        install(dm_home, "feature/zenoh", activate_if_none=False)

        assert registry.use_version(dm_home, "feature/zenoh").version == "feature%2Fzenoh"
        assert registry.use_version(dm_home, "feature%2Fzenoh").active
        assert registry.get_active(dm_home) == "feature%2Fzenoh"

    def test_no_platform_asset(self, dm_home, catalog, fake_build):
        catalog.release("v1.2.0", {"dora-cli-riscv64-unknown-linux-gnu.tar.gz": b"nope"})
        result = install(dm_home, "1.2.0")
        assert fake_build == ["v1.2.0"]
        assert result.method == "source"

    def test_catalog_unreachable_for_tag(self, dm_home, fake_build):
        result = install(dm_home, "1.2.0")
        assert fake_build == ["v1.2.0"]
        assert result.version == "1.2.0"

    def test_download_failure(self, dm_home, catalog, host_asset_name, fake_build):
        payload = {
            "tag_name": "v1.2.0",
            "assets": [{
                "name": host_asset_name,
                "size": 10,
                "browser_download_url": f"{catalog.base}/assets/gone/{host_asset_name}",
            }],
        }
        catalog.route("/repos/dora-rs/dora/releases/tags/v1.2.0", json.dumps(payload).encode())
        events = []

        result = install(dm_home, "1.2.0", events.append)

        assert result.method == "source"
        assert S.BUILDING in _stages(events)
        assert "Download failed" in next(e.detail for e in events if e.stage == S.BUILDING)

    def test_cleans_leftovers(self, dm_home, fake_build):
        root = dm_home / "versions"
        (root / ".staging-1.2.0@dead").mkdir(parents=True)
        (root / ".trash-1.2.0@beef").mkdir()
        (root / "1.2.0").mkdir()
        (root / ".staging-1.2.0-rc1@cafe").mkdir()

        install(dm_home, "1.2.0")

        assert _store(dm_home) == [".staging-1.2.0-rc1@cafe", "1.2.0"]
        assert (root / "1.2.0" / "dora").is_file()


# ── Progress + InstallRun ───────────────────────────────────────


class TestProgressReporter:
    def test_rejects_backwards_stage(self):
        reporter = ProgressReporter()
        reporter.emit(S.EXTRACTING)
        with pytest.raises(InternalInvariantError):
            reporter.emit(S.DOWNLOADING)

    def test_cancel_checked_on_emit(self):
        cancel = threading.Event()
        reporter = ProgressReporter(cancel=cancel)
        reporter.emit(S.RESOLVING)
        cancel.set()
        with pytest.raises(InstallCancelled):
            reporter.emit(S.DOWNLOADING)

    def test_done_is_never_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        ProgressReporter(cancel=cancel).emit(S.DONE)


class TestInstallRun:
    def test_iterates_events_then_result(self, dm_home, fake_build):
        run = InstallRun(dm_home, "main")
        stages = _stages(list(run))
        assert stages[0] == S.RESOLVING
        assert stages[-1] == S.DONE
        assert run.result().version == "main"

    def test_result_raises_install_error(self, dm_home):
        run = InstallRun(dm_home, "latest")
        list(run)
        with pytest.raises(NetworkError):
            run.result()

    def test_unexpected_crash_is_wrapped(self, dm_home, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(orchestrator, "build_from_source", _boom)
        run = InstallRun(dm_home, "main")
        assert run.wait(timeout=30)
        with pytest.raises(Exception, match="Install crashed: kaboom"):
            run.result()
