"""
Platform resolver — host OS/CPU → release asset naming.

Release assets are named with Rust target triples, e.g.
``dora-cli-x86_64-unknown-linux-gnu.tar.gz``.  We match on the triple
prefix so both ``-gnu`` and ``-musl`` builds are accepted.
"""

from __future__ import annotations

import platform

from pydantic import BaseModel

from dm.core.errors import UnsupportedPlatform

# Architecture normalization: platform.machine() → release naming
_ARCH_MAP = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

_TRIPLES = {
    ("linux", "x86_64"): "x86_64-unknown-linux",
    ("linux", "aarch64"): "aarch64-unknown-linux",
    ("darwin", "x86_64"): "x86_64-apple-darwin",
    ("darwin", "aarch64"): "aarch64-apple-darwin",
    ("windows", "x86_64"): "x86_64-pc-windows",
}


class PlatformTarget(BaseModel):
    os: str
    arch: str
    triple: str

    @property
    def key(self) -> str:
        return f"{self.os}-{self.arch}"

    @property
    def patterns(self) -> list[str]:
        """Asset-name substrings to try, in priority order."""
        return [self.triple]


def resolve_target(system: str | None = None, machine: str | None = None) -> PlatformTarget:
    """Map the host (or the given system/machine) to a PlatformTarget.

    Raises:
        UnsupportedPlatform: If no release naming exists for the host.
    """
    os_name = (system or platform.system()).lower()
    raw_arch = (machine or platform.machine()).lower()
    arch = _ARCH_MAP.get(raw_arch, raw_arch)

    triple = _TRIPLES.get((os_name, arch))
    if triple is None:
        raise UnsupportedPlatform(f"No prebuilt dora releases for {os_name}/{raw_arch}")
    return PlatformTarget(os=os_name, arch=arch, triple=triple)
