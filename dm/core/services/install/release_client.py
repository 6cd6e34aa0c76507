"""
Release client — read-only queries against the GitHub releases API.

Distinguishes "this version does not exist" (404 → VersionNotFound)
from "we could not ask" (rate limit, 5xx, DNS, timeout → NetworkError)
so the installer can decide whether a source build is worth trying.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Any

from dm import __version__
from dm.core.errors import NetworkError, VersionNotFound
from dm.core.models.version import ReleaseAsset, ReleaseInfo, VersionSpec
from dm.core.services.install.platform import PlatformTarget

logger = logging.getLogger(__name__)

USER_AGENT = f"dm/{__version__}"
ASSET_PREFIX = "dora-cli"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".zip")

_LIST_CACHE_TTL = 600.0
_list_cache: dict[str, tuple[float, list[str]]] = {}
_list_cache_lock = threading.Lock()


class ReleaseClient:
    """GitHub releases for one ``owner/repo``."""

    def __init__(
        self,
        repository: str = "dora-rs/dora",
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ):
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _get_json(self, path: str) -> Any:
        url = f"{self.api_url}/repos/{self.repository}{path}"
        req = urllib.request.Request(
            url,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": USER_AGENT,
            },
        )
        logger.debug("GET %s", url)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise VersionNotFound(f"No release found at {url}") from e
            if e.code in (403, 429):
                raise NetworkError(
                    f"GitHub API rate limit or access denied ({e.code})",
                    details=_reset_hint(e),
                ) from e
            raise NetworkError(f"GitHub API error ({e.code}) for {url}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise NetworkError(f"Failed to reach GitHub: {e}") from e
        except json.JSONDecodeError as e:
            raise NetworkError(f"Malformed response from {url}: {e}") from e

    def fetch_release(self, spec: VersionSpec) -> ReleaseInfo:
        """Fetch one release (``latest`` resolves to the newest published tag).

        Raises:
            VersionNotFound: The catalog has no such release.
            NetworkError: The catalog could not be queried.
        """
        if spec.is_latest:
            data = self._get_json("/releases/latest")
        else:
            data = self._get_json(f"/releases/tags/{spec.tag}")
        return _parse_release(data)

    def list_releases(self, limit: int = 10) -> list[str]:
        """Most recent release tags, cached for ten minutes.

        On a network error the stale cache is returned if there is one.
        """
        key = f"{self.api_url}/{self.repository}:{limit}"
        with _list_cache_lock:
            cached = _list_cache.get(key)
        if cached and time.monotonic() - cached[0] < _LIST_CACHE_TTL:
            return list(cached[1])

        try:
            data = self._get_json(f"/releases?per_page={limit}")
        except NetworkError:
            if cached:
                logger.info("Release listing failed — serving stale cache")
                return list(cached[1])
            raise

        tags = [str(r.get("tag_name", "")) for r in data if r.get("tag_name")]
        with _list_cache_lock:
            _list_cache[key] = (time.monotonic(), tags)
        return tags


def clear_release_cache() -> None:
    with _list_cache_lock:
        _list_cache.clear()


def _parse_release(data: Any) -> ReleaseInfo:
    if not isinstance(data, dict) or "tag_name" not in data:
        raise NetworkError("Unexpected release payload from GitHub")
    assets = [
        ReleaseAsset(
            name=a.get("name", ""),
            url=a.get("browser_download_url", ""),
            size=int(a.get("size") or 0),
        )
        for a in data.get("assets", [])
        if a.get("browser_download_url")
    ]
    return ReleaseInfo(tag=data["tag_name"], assets=assets)


def _reset_hint(err: urllib.error.HTTPError) -> str:
    reset = err.headers.get("X-RateLimit-Reset") if err.headers else None
    if not reset:
        return ""
    try:
        wait = max(0, int(reset) - int(time.time()))
    except ValueError:
        return ""
    return f"Rate limit resets in {wait}s"


def select_asset(release: ReleaseInfo, target: PlatformTarget) -> ReleaseAsset | None:
    """Pick the CLI archive for ``target``, or None if there isn't one."""
    for pattern in target.patterns:
        for asset in release.assets:
            name = asset.name
            if (
                pattern in name
                and name.startswith(ASSET_PREFIX)
                and name.endswith(ARCHIVE_SUFFIXES)
            ):
                return asset
    return None
