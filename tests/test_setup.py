"""
Tests for setup — prerequisite checks, uv via pip, first dora install.
"""

from dm.core.persistence.events import NdjsonEventSink
from dm.core.services import version_registry as registry
from dm.core.services.runtime import setup


class TestSetup:
    def test_nothing_to_do(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)

        report = setup(dm_home)

        assert report.ok
        assert report.python_installed and report.uv_installed
        assert not report.uv_installed_now
        assert report.dora_version == "0.4.0"
        assert not report.dora_installed_now
        assert report.checks["uv"].detail == "uv 0.4.18"

    def test_installs_missing_uv(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        (toolbox / "uv").unlink()

        report = setup(dm_home)

        assert report.uv_installed_now
        assert report.uv_installed
        assert report.checks["uv"].detail == "uv 0.5.0"
        assert report.ok

    def test_pip_failure_is_reported(self, dm_home, toolbox, make_installed, monkeypatch):
        make_installed("0.4.0", active=True)
        (toolbox / "uv").unlink()
        monkeypatch.setenv("FAKE_PIP_FAIL", "1")

        report = setup(dm_home)

        assert not report.uv_installed_now
        assert not report.uv_installed
        assert not report.ok
        assert report.dora_installed

    def test_no_python_skips_uv_install(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        for name in ("python3", "pip3", "uv"):
            (toolbox / name).unlink()

        report = setup(dm_home)

        assert not report.python_installed
        assert not report.uv_installed_now
        assert not (toolbox / "uv").exists()

    def test_installs_latest_dora(self, dm_home, toolbox, catalog, host_asset_name, dora_tarball):
        catalog.release("v1.3.0", {host_asset_name: dora_tarball("1.3.0")}, latest=True)
        events = []

        report = setup(dm_home, events.append)

        assert report.dora_version == "1.3.0"
        assert report.dora_installed_now
        assert registry.get_active(dm_home) == "1.3.0"
        assert events and events[-1].stage.value == "done"
        assert report.ok

    def test_activates_installed_latest(self, dm_home, toolbox, catalog, host_asset_name,
                                        dora_tarball, make_installed):
        make_installed("1.3.0")
        catalog.release("v1.3.0", {host_asset_name: dora_tarball("1.3.0")}, latest=True)

        report = setup(dm_home)

        assert report.dora_version == "1.3.0"
        assert not report.dora_installed_now
        assert registry.get_active(dm_home) == "1.3.0"

    def test_offline_dora_install_is_reported(self, dm_home, toolbox):
        report = setup(dm_home)

        assert not report.dora_installed
        assert report.dora_error["category"] == "transient"
        assert not report.ok
        assert registry.get_active(dm_home) is None

    def test_records_event(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        setup(dm_home)
        events = NdjsonEventSink(dm_home / "events.ndjson").read_all()
        assert [e.message for e in events if e.activity == "setup"] == ["START", "OK"]

    def test_report_dict(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        data = setup(dm_home).to_dict()
        assert data["ok"] is True
        assert data["python_installed"] and data["uv_installed"] and data["dora_installed"]
        assert data["dora_error"] is None
