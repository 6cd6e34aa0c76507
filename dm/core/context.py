"""
Home context — which dm home directory this process operates on.

The home is set ONCE at startup by whichever entry point launches
the app:

    - CLI:          main.py   → context.set_home(home)
    - Web server:   server.py → context.set_home(home)
    - Tests:        fixtures  → context.set_home(tmp_path)

Engine operations still take ``home`` explicitly; this is only the
default the front ends fall back to.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from dm.core.config.loader import resolve_home

_home: Optional[Path] = None


def set_home(home: Path) -> None:
    """Register the home directory for the current process."""
    global _home
    _home = home


def get_home() -> Path:
    """Return the registered home, resolving the default if unset."""
    return _home if _home is not None else resolve_home()
