"""
CLI commands for the version store — install, uninstall, use, versions.

Thin wrappers over ``dm.core.services.install`` and
``dm.core.services.version_registry``.

Usage::

    dm install            # latest release
    dm install 0.3.9
    dm use 0.3.9
    dm versions --json
    dm uninstall 0.3.8
"""

from __future__ import annotations

import click

from dm.core.errors import DmError
from dm.ui.cli.helpers import echo_json, exit_with, get_home

_STAGE_ICONS = {
    "resolving": "🔍",
    "downloading": "⬇️ ",
    "building": "🔨",
    "extracting": "📦",
    "installing": "📥",
    "done": "✅",
}


class _ProgressPrinter:
    """Render InstallProgress events: one line per stage, a live
    percentage while downloading, build output only with -v."""

    def __init__(self, verbose: bool):
        self.verbose = verbose
        self._stage = None
        self._inline = False

    def _end_inline(self) -> None:
        if self._inline:
            click.echo()
            self._inline = False

    def __call__(self, event) -> None:
        from dm.core.services.install.download import fmt_size

        stage = event.stage.value
        if stage != self._stage:
            self._end_inline()
            self._stage = stage
            if stage == "done":
                click.secho(f"{_STAGE_ICONS[stage]} {event.detail}", fg="green")
                return
            click.secho(f"{_STAGE_ICONS.get(stage, '•')} {stage.capitalize()}", fg="cyan", bold=True)
            if event.detail and stage != "downloading":
                click.echo(f"   {event.detail}")
            return

        if stage == "downloading" and event.bytes_done is not None:
            if event.fraction is not None:
                line = f"\r   {event.fraction * 100:5.1f}%  {fmt_size(event.bytes_done)}"
                if event.bytes_total:
                    line += f" / {fmt_size(event.bytes_total)}"
            else:
                line = f"\r   {fmt_size(event.bytes_done)}"
            click.echo(line, nl=False)
            self._inline = True
        elif stage == "building":
            if self.verbose:
                click.echo(f"   {event.detail}")
        elif event.detail:
            click.echo(f"   {event.detail}")

    def close(self) -> None:
        self._end_inline()


# ── Install ─────────────────────────────────────────────────────


@click.command()
@click.argument("version", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(ctx: click.Context, version: str | None, as_json: bool) -> None:
    """Install a dora version (default: latest release).

    VERSION is a release tag (``0.3.9``, ``v0.3.9``), ``latest``, or a
    git ref to build from source.
    """
    from dm.core.services.install import InstallRun

    home = get_home(ctx)
    printer = None if as_json else _ProgressPrinter(ctx.obj.get("verbose", False))

    run = InstallRun(home, version)
    try:
        for event in run:
            if printer:
                printer(event)
    except KeyboardInterrupt:
        run.cancel()
        if printer:
            click.secho("\n⏹  Cancelling...", fg="yellow", err=True)
        for _ in run:
            pass
    finally:
        if printer:
            printer.close()

    try:
        result = run.result()
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        data = result.model_dump(mode="json")
        data["version"] = result.version
        echo_json(data)
        return

    if not result.already_installed:
        click.echo(f"   Method:  {result.method}")
        click.echo(f"   Path:    {result.installed.path}")
    if result.set_active:
        click.secho(f"   ➜ dora {result.version} is now the active version", fg="green")


# ── Uninstall ───────────────────────────────────────────────────


@click.command()
@click.argument("version")
@click.option("--force", is_flag=True, help="Remove even if it is the active version.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def uninstall(ctx: click.Context, version: str, force: bool, as_json: bool) -> None:
    """Remove an installed dora version."""
    from dm.core.services.version_registry import uninstall as do_uninstall

    try:
        removed = do_uninstall(get_home(ctx), version, force=force)
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        echo_json({"uninstalled": removed.version, "was_active": removed.active})
        return
    click.secho(f"🗑  Uninstalled dora {removed.version}", fg="green")
    if removed.active:
        click.secho("   No version is active now. Run `dm use <version>`.", fg="yellow")


# ── Use ─────────────────────────────────────────────────────────


@click.command()
@click.argument("version")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def use(ctx: click.Context, version: str, as_json: bool) -> None:
    """Switch the active dora version."""
    from dm.core.services.version_registry import use_version

    try:
        installed = use_version(get_home(ctx), version)
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        echo_json(installed.model_dump(mode="json"))
        return
    click.secho(f"✅ Now using dora {installed.version}", fg="green")


# ── Versions ────────────────────────────────────────────────────


@click.command()
@click.option("--installed", "installed_only", is_flag=True, help="Skip the release catalog.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def versions(ctx: click.Context, installed_only: bool, as_json: bool) -> None:
    """List installed versions and recent releases."""
    from dm.core.models import VersionsReport
    from dm.core.services.version_registry import list_versions, versions_report

    home = get_home(ctx)
    try:
        if installed_only:
            report = VersionsReport(installed=list_versions(home))
        else:
            report = versions_report(home)
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        echo_json(report.model_dump(mode="json"))
        return

    click.secho("📦 Installed:", fg="cyan", bold=True)
    if not report.installed:
        click.echo("   (none)  Run `dm install` to get started.")
    for v in report.installed:
        marker = click.style(" ← active", fg="green") if v.active else ""
        click.echo(f"   {v.version:<16} {v.method:<8} {v.installed_at[:19]}{marker}")

    if installed_only:
        return
    click.echo()
    click.secho("🌐 Available:", fg="cyan", bold=True)
    if not report.available:
        click.echo("   (release catalog unreachable)")
    for a in report.available:
        mark = click.style(" ✓ installed", fg="green") if a.installed else ""
        click.echo(f"   {a.tag}{mark}")
