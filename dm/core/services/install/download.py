"""
Asset download — stream a release asset to a staging file.

Progress is keyed on bytes received versus ``Content-Length`` when the
server sends one; otherwise the fraction is left indeterminate.  The
cancel flag is checked at every progress event, and a partial file is
always removed on failure.
"""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
from pathlib import Path

from dm.core.errors import NetworkError
from dm.core.services.install.progress import InstallStage, ProgressReporter
from dm.core.services.install.release_client import USER_AGENT

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_INDETERMINATE_STEP = 1024 * 1024


def fmt_size(n: int | float) -> str:
    """Format byte count to human-readable string."""
    for unit in ("B", "KiB", "MiB", "GiB"):
        if n < 1024:
            return f"{n:.1f} {unit}" if unit != "B" else f"{int(n)} B"
        n /= 1024
    return f"{n:.1f} TiB"


def download_asset(
    url: str,
    dest: Path,
    reporter: ProgressReporter,
    *,
    expected_size: int = 0,
    timeout: float = 30.0,
) -> Path:
    """Download ``url`` into ``dest``.

    Args:
        url: Asset download URL.
        dest: Target file (its directory must exist).
        reporter: Receives ``downloading`` events; raises on cancel.
        expected_size: Size advertised by the catalog, used when the
            response carries no Content-Length.
        timeout: Socket timeout in seconds.

    Returns:
        ``dest``.

    Raises:
        NetworkError: On any HTTP or connection failure.
        InstallCancelled: If the caller aborted mid-download.
    """
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    logger.info("Downloading %s", url)

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp, dest.open("wb") as out:
            header = resp.headers.get("Content-Length")
            total = int(header) if header and header.isdigit() else expected_size
            total = total or None

            label = dest.name if not total else f"{dest.name} ({fmt_size(total)})"
            reporter.emit(
                InstallStage.DOWNLOADING,
                f"Downloading {label}",
                fraction=0.0 if total else None,
                bytes_done=0,
                bytes_total=total,
            )

            done = 0
            last_marker = 0
            while True:
                chunk = resp.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                done += len(chunk)

                marker = int(done * 100 / total) if total else done // _INDETERMINATE_STEP
                if marker != last_marker:
                    last_marker = marker
                    reporter.emit(
                        InstallStage.DOWNLOADING,
                        f"Downloading: {fmt_size(done)}" + (f"/{fmt_size(total)}" if total else ""),
                        fraction=min(done / total, 1.0) if total else None,
                        bytes_done=done,
                        bytes_total=total,
                    )
    except urllib.error.HTTPError as e:
        dest.unlink(missing_ok=True)
        raise NetworkError(f"Download failed ({e.code}): {url}") from e
    except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
        dest.unlink(missing_ok=True)
        raise NetworkError(f"Download failed: {e}") from e
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    if total and done < total:
        dest.unlink(missing_ok=True)
        raise NetworkError(
            f"Download truncated: got {fmt_size(done)} of {fmt_size(total)}"
        )

    logger.debug("Downloaded %d bytes to %s", done, dest)
    return dest
