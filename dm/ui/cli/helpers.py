"""
Shared CLI helpers — home resolution and error → exit code mapping.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from dm.core.errors import ENVIRONMENT, INTERNAL, TRANSIENT, USER, DmError

# Exit codes by error category
EXIT_CODES = {
    USER: 1,
    TRANSIENT: 2,
    ENVIRONMENT: 3,
    INTERNAL: 4,
}


def get_home(ctx: click.Context) -> Path:
    """Home directory chosen by the root command."""
    home = ctx.obj.get("home") if ctx.obj else None
    if home is None:
        from dm.core.context import get_home as _ctx_home

        home = _ctx_home()
    return home


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def exit_with(err: DmError, as_json: bool = False) -> NoReturn:
    """Report ``err`` and exit with its category's code."""
    code = EXIT_CODES.get(err.category, 1)
    if as_json:
        echo_json(err.to_dict())
        sys.exit(code)

    icon = "⚠️ " if err.category in (USER, TRANSIENT) else "❌"
    click.secho(f"{icon} {err.message}", fg="red", err=True)
    if err.details:
        for line in err.details.splitlines()[-20:]:
            click.echo(f"   {line}", err=True)
    if err.retryable:
        click.echo("   (network problem, safe to retry)", err=True)
    sys.exit(code)
