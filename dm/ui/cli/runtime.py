"""
CLI commands for the dora runtime — up, down, status, doctor, setup, exec, events.

Thin wrappers over ``dm.core.services.runtime``.
"""

from __future__ import annotations

import sys

import click

from dm.core.errors import DmError
from dm.ui.cli.helpers import echo_json, exit_with, get_home

_STATE_STYLE = {
    "running": ("●", "green"),
    "stopped": ("○", "white"),
    "unknown": ("?", "yellow"),
}


def _print_process(role: str, info) -> None:
    icon, color = _STATE_STYLE[info.state.value]
    click.secho(f"   {icon} {role:<12}", fg=color, nl=False)
    click.echo(info.state.value, nl=False)
    if info.pid:
        owner = "" if info.owned else " (pid file)"
        click.echo(f"  pid {info.pid}{owner}", nl=False)
    click.echo()


def _print_status(st) -> None:
    click.secho("🛰  dora runtime", fg="cyan", bold=True)
    click.echo(f"   Home:    {st.home}")
    click.echo(f"   Active:  {st.active_version or '(none)'}")
    _print_process("coordinator", st.coordinator)
    _print_process("daemon", st.daemon)
    if st.coordinator.state.value != "running":
        return
    if st.actual_version:
        click.echo(f"   Binary:  dora {st.actual_version}")
    if not st.dataflows:
        click.echo("   Dataflows: (none)")
        return
    click.echo(f"   Dataflows ({len(st.dataflows)}):")
    for line in st.dataflows:
        click.echo(f"     {line}")


# ── Lifecycle ───────────────────────────────────────────────────


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def up(ctx: click.Context, as_json: bool) -> None:
    """Start the dora coordinator and daemon."""
    from dm.core.services.runtime import up as runtime_up

    try:
        st = runtime_up(get_home(ctx), detach=True)
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        echo_json(st.to_dict())
        return
    click.secho("🚀 dora runtime started", fg="green", bold=True)
    _print_process("coordinator", st.coordinator)
    _print_process("daemon", st.daemon)


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def down(ctx: click.Context, as_json: bool) -> None:
    """Stop the dora daemon and coordinator."""
    from dm.core.services.runtime import down as runtime_down

    try:
        st = runtime_down(get_home(ctx))
    except DmError as e:
        exit_with(e, as_json)

    if as_json:
        echo_json(st.to_dict())
        return
    click.secho("🛑 dora runtime stopped", fg="green")


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show coordinator/daemon liveness."""
    from dm.core.services.runtime import status as runtime_status

    st = runtime_status(get_home(ctx))
    if as_json:
        echo_json(st.to_dict())
        return
    _print_status(st)


# ── Diagnostics ─────────────────────────────────────────────────


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def doctor(ctx: click.Context, as_json: bool) -> None:
    """Check the environment for running dora."""
    from dm.core.services.runtime import doctor as run_doctor

    report = run_doctor(get_home(ctx))

    if as_json:
        echo_json(report.to_dict())
        sys.exit(0 if report.all_ok else 1)

    click.secho("🩺 Environment check", fg="cyan", bold=True)
    for check in report.checks.values():
        if check.ok:
            click.secho(f"   ✅ {check.name:<16}", fg="green", nl=False)
        elif check.required:
            click.secho(f"   ❌ {check.name:<16}", fg="red", nl=False)
        else:
            click.secho(f"   ⚠️  {check.name:<16}", fg="yellow", nl=False)
        click.echo(check.detail)
        if not check.ok and check.suggestion:
            click.echo(f"      → {check.suggestion}")

    click.echo()
    if report.all_ok:
        click.secho("✅ Ready to run dora", fg="green", bold=True)
    else:
        click.secho("❌ Some required checks failed", fg="red", bold=True)
        sys.exit(1)


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def setup(ctx: click.Context, as_json: bool) -> None:
    """Install uv and the latest dora if they are missing."""
    from dm.core.services.runtime import setup as run_setup
    from dm.ui.cli.versions import _ProgressPrinter

    printer = None
    if not as_json:
        click.secho("🧰 Setting up dora", fg="cyan", bold=True)
        printer = _ProgressPrinter(ctx.obj.get("verbose", False))
    try:
        report = run_setup(get_home(ctx), printer)
    finally:
        if printer:
            printer.close()

    if as_json:
        echo_json(report.to_dict())
        sys.exit(0 if report.ok else 1)

    click.echo()
    for check in report.checks.values():
        icon, color = ("✅", "green") if check.ok else ("❌", "red")
        click.secho(f"   {icon} {check.name:<8}", fg=color, nl=False)
        click.echo(check.detail)
    if report.uv_installed_now:
        click.echo("      → installed with pip")
    if report.dora_version:
        suffix = " (just installed)" if report.dora_installed_now else ""
        click.secho(f"   ✅ {'dora':<8}", fg="green", nl=False)
        click.echo(f"{report.dora_version}{suffix}")
    else:
        error = (report.dora_error or {}).get("error", "not installed")
        click.secho(f"   ❌ {'dora':<8}", fg="red", nl=False)
        click.echo(error)

    click.echo()
    if report.ok:
        click.secho("🎉 Setup complete! Try: dm up, dm status, dm doctor", fg="green", bold=True)
    else:
        click.secho("❌ Setup incomplete; see `dm doctor`", fg="red", bold=True)
        sys.exit(1)


@click.command()
@click.option("-n", "--limit", default=20, show_default=True, help="Number of events.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def events(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent operation events."""
    from dm.core.config.loader import events_path
    from dm.core.persistence.events import NdjsonEventSink

    recent = NdjsonEventSink(events_path(get_home(ctx))).read_recent(limit)

    if as_json:
        echo_json([e.model_dump(mode="json") for e in recent])
        return
    if not recent:
        click.echo("No events recorded yet.")
        return
    for e in recent:
        color = "red" if e.level == "error" else None
        click.secho(f"{e.timestamp[:19]}  {e.activity:<20} {e.message}", fg=color)


# ── Passthrough ─────────────────────────────────────────────────


@click.command(
    "exec",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def exec_(ctx: click.Context, args: tuple[str, ...]) -> None:
    """Run the active dora binary with ARGS (e.g. ``dm exec -- list``)."""
    from dm.core.services.runtime import passthrough

    try:
        code = passthrough(get_home(ctx), list(args))
    except DmError as e:
        exit_with(e)
    sys.exit(code if code >= 0 else 128 - code)
