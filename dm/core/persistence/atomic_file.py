"""
Atomic file writes — write to a temp file, then rename over the target.

Readers observe either the old content or the new content, never a
partially written file.  Used for config.toml (the active version
pointer), pid files, and per-version install metadata.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content``.

    The temp file lives in the same directory so the final
    ``os.replace`` never crosses a filesystem boundary.

    Args:
        path: Target file.
        content: Full new text content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}_",
        suffix=".tmp",
    )
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.debug("Wrote %s", path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
