"""
Tests for doctor — independent environment checks.
"""

import importlib

from dm.core.persistence.events import NdjsonEventSink
from dm.core.services.runtime.doctor import doctor

# The package re-exports doctor(), which shadows the submodule attribute
doctor_mod = importlib.import_module("dm.core.services.runtime.doctor")


class TestDoctor:
    def test_all_ok(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)

        report = doctor(dm_home)

        assert report.all_ok
        assert report.checks["python"].detail == "python3: Python 3.12.1"
        assert report.checks["uv"].detail == "uv 0.4.18"
        assert report.active_version == "0.4.0"
        assert report.installed_versions == ["0.4.0"]

    def test_missing_uv_flips_only_uv(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        before = {name: c.ok for name, c in doctor(dm_home).checks.items()}

        (toolbox / "uv").unlink()
        after = {name: c.ok for name, c in doctor(dm_home).checks.items()}

        changed = {name for name in before if before[name] != after[name]}
        assert changed == {"uv"}
        assert not doctor(dm_home).all_ok

    def test_source_tools_are_optional(self, dm_home, toolbox, make_installed):
        make_installed("0.4.0", active=True)
        (toolbox / "git").unlink()
        (toolbox / "cargo").unlink()

        report = doctor(dm_home)

        assert not report.checks["cargo"].ok
        assert not report.checks["cargo"].required
        assert report.all_ok

    def test_no_active_version(self, dm_home, toolbox):
        report = doctor(dm_home)
        assert not report.checks["active_version"].ok
        assert not report.checks["active_binary"].ok
        assert report.checks["active_binary"].suggestion == "dm install"
        assert report.checks["home_writable"].ok

    def test_path_entry_managed(self, dm_home, toolbox, make_installed, monkeypatch):
        directory = make_installed("0.4.0", active=True)
        monkeypatch.setenv("PATH", f"{directory}:{toolbox}")
        assert doctor(dm_home).checks["path_entry"].ok

    def test_path_entry_unmanaged(self, dm_home, toolbox, fake_dora):
        fake_dora(toolbox / "dora")
        check = doctor(dm_home).checks["path_entry"]
        assert not check.ok
        assert "not managed" in check.detail

    def test_crashing_check_is_contained(self, dm_home, toolbox, monkeypatch):
        def explode():
            raise RuntimeError("probe exploded")

        monkeypatch.setattr(doctor_mod, "check_uv", explode)
        report = doctor(dm_home)

        assert not report.checks["uv"].ok
        assert "probe exploded" in report.checks["uv"].detail
        assert report.checks["python"].ok

    def test_never_raises_on_broken_config(self, dm_home, toolbox):
        (dm_home / "config.toml").write_text("[[[")
        report = doctor(dm_home)
        assert not report.checks["active_version"].ok
        assert report.checks["home_writable"].ok

    def test_records_event(self, dm_home, toolbox):
        doctor(dm_home)
        events = NdjsonEventSink(dm_home / "events.ndjson").read_all()
        assert [e.message for e in events if e.activity == "doctor"] == ["START", "OK"]

    def test_report_dict(self, dm_home, toolbox):
        data = doctor(dm_home).to_dict()
        assert data["all_ok"] is False
        assert set(data["checks"]) >= {"python", "uv", "active_binary", "home_writable"}
