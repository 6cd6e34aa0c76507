"""
dm — dora version manager CLI entrypoint.

Usage:
    python -m dm.main --help
    dm install
    dm up
    dm exec -- list
"""

from __future__ import annotations

import click

from dm import __version__
from dm.core.observability.logging_config import level_from_flags, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="dm")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--home",
    type=click.Path(file_okay=False),
    default=None,
    help="dm home directory (default: $DM_HOME or ~/.dm).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    home: str | None,
) -> None:
    """dm — install, switch and run dora versions."""
    from dm.core.config.loader import resolve_home
    from dm.core.context import set_home

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug

    resolved = resolve_home(home)
    ctx.obj["home"] = resolved
    set_home(resolved)

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=level_from_flags(verbose=verbose, quiet=quiet, debug=debug),
        quiet_third_party=not debug,
    )


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", default=3210, type=int, help="Bind port.")
@click.pass_context
def web(ctx: click.Context, host: str, port: int) -> None:
    """Start the JSON/HTTP API server."""
    from dm.ui.web.server import create_app, run_server

    home = ctx.obj["home"]
    app = create_app(home)
    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("⚡ dm — HTTP API", bold=True)
    click.echo(f"   API:   http://{host}:{port}/api")
    click.echo(f"   Home:  {home}")
    if debug:
        click.secho("   Logging: DEBUG (all output)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register commands from dm/ui/cli/ ───────────────────────────

from dm.ui.cli.runtime import doctor, down, events, exec_, setup, status, up  # noqa: E402
from dm.ui.cli.versions import install, uninstall, use, versions  # noqa: E402

for _command in (
    install, uninstall, use, versions, up, down, status, doctor, setup, events, exec_,
):
    cli.add_command(_command)


if __name__ == "__main__":
    cli()
