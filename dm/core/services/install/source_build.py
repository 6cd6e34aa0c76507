"""
Source build fallback — git clone + cargo build.

Used when the release catalog has no prebuilt asset for this host,
when the download fails, or when the version spec is a git ref rather than a
release tag.  All toolchain output is streamed into ``building``
progress events; a non-zero exit becomes BuildFailed carrying the
tail of that output.
"""

from __future__ import annotations

import logging
from pathlib import Path

from dm.core.config.loader import InstallSettings
from dm.core.errors import BuildFailed, InstallCancelled, ToolchainMissing
from dm.core.services.install.progress import InstallStage, ProgressReporter
from dm.core.services.process_runner import ProcessResult, run_process, which

logger = logging.getLogger(__name__)

REQUIRED_TOOLCHAIN = ("git", "cargo")
CARGO_PACKAGE = "dora-cli"

_RUSTUP_HINT = "Install Rust: curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh"


def validate_toolchain(tools: tuple[str, ...] = REQUIRED_TOOLCHAIN) -> None:
    """Check every build tool is on PATH.

    Raises:
        ToolchainMissing: Listing each missing tool with a suggestion.
    """
    missing = [t for t in tools if not which(t)]
    if not missing:
        return

    hints = []
    if "cargo" in missing:
        hints.append(_RUSTUP_HINT)
    if "git" in missing:
        hints.append("Install git from your system package manager")
    raise ToolchainMissing(missing, suggestion=" | ".join(hints))


def _check(result: ProcessResult, step: str) -> None:
    if result.ok:
        return
    if result.outcome == "cancelled":
        raise InstallCancelled(f"Install cancelled during {step}")
    if result.outcome == "spawn_error":
        raise ToolchainMissing([step.split()[0]], suggestion=result.error)
    raise BuildFailed(f"{step} failed: {result.error}", output_tail=result.output_tail)


def build_from_source(
    ref: str,
    workspace: Path,
    reporter: ProgressReporter,
    settings: InstallSettings,
    *,
    binary_name: str = "dora",
) -> Path:
    """Clone ``ref`` into ``workspace`` and build the CLI.

    Args:
        ref: Git tag or branch to build.
        workspace: Empty temporary directory owned by the caller.
        reporter: Receives ``building`` events.
        settings: Git URL and build timeout.
        binary_name: File name of the produced binary.

    Returns:
        Path to the built binary inside ``workspace``.

    Raises:
        ToolchainMissing: git or cargo not available.
        BuildFailed: Clone or compile exited non-zero.
        InstallCancelled: The caller aborted.
    """
    validate_toolchain()

    def on_line(line: str) -> None:
        reporter.emit(InstallStage.BUILDING, line)

    src = workspace / "src"
    reporter.emit(InstallStage.BUILDING, f"Cloning {settings.git_url} at {ref}")
    result = run_process(
        ["git", "clone", "--depth=1", "--branch", ref, settings.git_url, str(src)],
        on_line=on_line,
        timeout=settings.build_timeout,
        cancel=reporter.cancel_event,
    )
    _check(result, "git clone")

    reporter.emit(InstallStage.BUILDING, f"cargo build --release -p {CARGO_PACKAGE}")
    result = run_process(
        ["cargo", "build", "--release", "-p", CARGO_PACKAGE],
        on_line=on_line,
        cwd=src,
        timeout=settings.build_timeout,
        cancel=reporter.cancel_event,
    )
    _check(result, "cargo build")

    built = src / "target" / "release" / binary_name
    if not built.is_file():
        raise BuildFailed(
            f"cargo build succeeded but {built} was not produced",
            output_tail=result.output_tail,
        )
    logger.info("Built %s from source (%s)", binary_name, ref)
    return built
