"""
Archive handler — turn a downloaded or built artifact into one binary.

Formats are detected by file name first, then by magic bytes:
gzip/xz/bzip2-compressed tar, plain tar, zip, or a raw executable
(ELF, Mach-O, PE).  Members are extracted one at a time; any member
that would land outside the staging directory is rejected.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path

from dm.core.errors import AmbiguousArtifact, ArchiveError

logger = logging.getLogger(__name__)

TAR_GZ = "tar.gz"
TAR_XZ = "tar.xz"
TAR_BZ2 = "tar.bz2"
TAR = "tar"
ZIP = "zip"
BINARY = "binary"

_SUFFIXES = (
    (".tar.gz", TAR_GZ),
    (".tgz", TAR_GZ),
    (".tar.xz", TAR_XZ),
    (".txz", TAR_XZ),
    (".tar.bz2", TAR_BZ2),
    (".tar", TAR),
    (".zip", ZIP),
)

_MAGIC = (
    (b"\x1f\x8b", TAR_GZ),
    (b"\xfd7zXZ\x00", TAR_XZ),
    (b"BZh", TAR_BZ2),
    (b"PK\x03\x04", ZIP),
    (b"\x7fELF", BINARY),
    (b"\xfe\xed\xfa\xce", BINARY),
    (b"\xfe\xed\xfa\xcf", BINARY),
    (b"\xce\xfa\xed\xfe", BINARY),
    (b"\xcf\xfa\xed\xfe", BINARY),
    (b"\xca\xfe\xba\xbe", BINARY),
    (b"MZ", BINARY),
    (b"#!", BINARY),
)

# Never look for the binary inside these
_SKIP_DIRS = {".venv", ".git", "__MACOSX", "node_modules"}

_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


def detect_format(path: Path) -> str:
    """Return one of the format constants for ``path``.

    Raises:
        ArchiveError: If the content is not a recognizable format.
    """
    name = path.name.lower()
    for suffix, fmt in _SUFFIXES:
        if name.endswith(suffix):
            return fmt

    try:
        with path.open("rb") as f:
            head = f.read(512)
    except OSError as e:
        raise ArchiveError(f"Cannot read artifact {path}: {e}") from e

    for magic, fmt in _MAGIC:
        if head.startswith(magic):
            return fmt
    if len(head) > 262 and head[257:262] == b"ustar":
        return TAR
    raise ArchiveError(f"Unrecognized artifact format: {path.name}")


def extract(artifact: Path, dest: Path, *, binary_name: str = "dora") -> str:
    """Extract ``artifact`` into ``dest`` (created if needed).

    A raw executable is copied in as ``binary_name``.

    Returns:
        The detected format.

    Raises:
        ArchiveError: Corrupt archive or unsafe member path.
    """
    fmt = detect_format(artifact)
    dest.mkdir(parents=True, exist_ok=True)
    logger.debug("Extracting %s (%s) into %s", artifact.name, fmt, dest)

    if fmt == BINARY:
        target = dest / binary_name
        shutil.copyfile(artifact, target)
        target.chmod(0o755)
    elif fmt == ZIP:
        _extract_zip(artifact, dest)
    else:
        _extract_tar(artifact, dest)
    return fmt


def _safe_target(root: Path, member_name: str) -> Path:
    target = root / member_name
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        raise ArchiveError(f"Archive member escapes staging directory: {member_name}") from None
    return target


def _extract_tar(artifact: Path, dest: Path) -> None:
    try:
        with tarfile.open(artifact, "r:*") as tar:
            for member in tar.getmembers():
                target = _safe_target(dest, member.name)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    # links, devices, fifos: a release binary never needs them
                    logger.debug("Skipping non-regular member %s", member.name)
                    continue
                fobj = tar.extractfile(member)
                if fobj is None:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with fobj, target.open("wb") as out:
                    shutil.copyfileobj(fobj, out)
                target.chmod(member.mode & 0o777)
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ArchiveError(f"tar extraction failed: {e}") from e


def _extract_zip(artifact: Path, dest: Path) -> None:
    try:
        with zipfile.ZipFile(artifact) as zf:
            for info in zf.infolist():
                target = _safe_target(dest, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
                # ZipFile drops permissions; unix mode lives in the high bits
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"zip extraction failed: {e}") from e


def _is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & _EXEC_BITS)


def _walk_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink():
                files.append(path)
    return files


def locate_binary(root: Path, name: str = "dora") -> Path:
    """Find the single file in ``root`` that is the runtime binary.

    Resolution:
        1. Files named ``name``: exactly one wins; several are narrowed
           to those with an executable bit.
        2. Otherwise, the single file with an executable bit.

    Raises:
        AmbiguousArtifact: Zero or several candidates.
    """
    files = _walk_files(root)
    named = [f for f in files if f.name == name]

    if len(named) == 1:
        return named[0]
    if len(named) > 1:
        runnable = [f for f in named if _is_executable(f)]
        if len(runnable) == 1:
            return runnable[0]
        raise AmbiguousArtifact(
            f"Found {len(named)} files named {name!r} in artifact",
            [str(f.relative_to(root)) for f in named],
        )

    executables = [f for f in files if _is_executable(f)]
    if len(executables) == 1:
        return executables[0]
    if not executables:
        raise AmbiguousArtifact(f"No {name!r} binary found in artifact")
    raise AmbiguousArtifact(
        f"Found {len(executables)} executables and none named {name!r}",
        [str(f.relative_to(root)) for f in executables],
    )


def verify_runnable(path: Path) -> None:
    """Ensure ``path`` is a non-empty file with the executable bit set.

    Raises:
        ArchiveError: If the binary cannot be run.
    """
    try:
        st = path.stat()
    except OSError as e:
        raise ArchiveError(f"Binary missing after extraction: {path}") from e
    if st.st_size == 0:
        raise ArchiveError(f"Binary is empty: {path}")
    if not st.st_mode & _EXEC_BITS:
        path.chmod(st.st_mode | 0o755)
    if not os.access(path, os.X_OK):
        raise ArchiveError(f"Binary is not executable: {path}")
