"""
Process executor — the single place external programs are launched.

Two shapes:

- ``run_process``   run to completion, streaming merged stdout/stderr
                    line-by-line to a callback, and classify the result.
- ``spawn_detached`` start a long-running process whose output goes to
                    a log file; the caller owns the returned Popen.

Classification never raises: spawn failures, timeouts and cancellation
are all reported through ``ProcessResult.outcome``.
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

logger = logging.getLogger(__name__)

Outcome = Literal["ok", "failed", "spawn_error", "timeout", "cancelled"]

_TAIL_LINES = 40
_POLL_INTERVAL = 0.1


@dataclass
class ProcessResult:
    """Classified outcome of one external program run."""

    outcome: Outcome
    exit_code: int | None = None
    output_tail: str = ""
    elapsed_ms: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"


def run_process(
    cmd: list[str],
    *,
    on_line: Callable[[str], None] | None = None,
    timeout: float | None = None,
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
    cancel: threading.Event | None = None,
    tail_lines: int = _TAIL_LINES,
) -> ProcessResult:
    """Run ``cmd`` to completion.

    Args:
        cmd: Argument list; never run through a shell.
        on_line: Called with each output line (newline stripped).
        timeout: Seconds before the process is killed.
        cwd: Working directory.
        env: Extra environment variables layered over os.environ.
        cancel: When set, the process is killed at the next poll.
        tail_lines: How many trailing output lines to keep.

    Returns:
        ProcessResult with outcome ``ok`` only when the exit code is 0.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug("Executing: %s (cwd=%s)", " ".join(cmd), cwd)
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        logger.debug("Spawn failed for %s: %s", cmd[0], e)
        return ProcessResult(outcome="spawn_error", error=f"Cannot start {cmd[0]}: {e}")

    lines: queue.Queue[str | None] = queue.Queue()
    reader = threading.Thread(target=_pump, args=(proc, lines), daemon=True)
    reader.start()

    tail: deque[str] = deque(maxlen=tail_lines)
    deadline = start + timeout if timeout else None
    outcome: Outcome | None = None
    eof = False

    while not eof:
        try:
            line = lines.get(timeout=_POLL_INTERVAL)
        except queue.Empty:
            pass
        else:
            if line is None:
                eof = True
                continue
            tail.append(line)
            if on_line is not None:
                try:
                    on_line(line)
                except BaseException:
                    _kill(proc)
                    raise

        if cancel is not None and cancel.is_set():
            outcome = "cancelled"
            break
        if deadline is not None and time.monotonic() > deadline:
            outcome = "timeout"
            break

    if outcome is not None:
        _kill(proc)
        reader.join(timeout=1)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        error = (
            f"Command timed out ({timeout}s)" if outcome == "timeout" else "Cancelled"
        )
        return ProcessResult(
            outcome=outcome,
            exit_code=proc.returncode,
            output_tail="\n".join(tail),
            elapsed_ms=elapsed_ms,
            error=error,
        )

    # Output closed; the process may still be running
    remaining = max(0.0, deadline - time.monotonic()) if deadline is not None else None
    try:
        exit_code = proc.wait(timeout=remaining)
    except subprocess.TimeoutExpired:
        _kill(proc)
        return ProcessResult(
            outcome="timeout",
            exit_code=proc.returncode,
            output_tail="\n".join(tail),
            elapsed_ms=int((time.monotonic() - start) * 1000),
            error=f"Command timed out ({timeout}s)",
        )
    elapsed_ms = int((time.monotonic() - start) * 1000)
    if exit_code == 0:
        return ProcessResult(
            outcome="ok", exit_code=0, output_tail="\n".join(tail), elapsed_ms=elapsed_ms
        )
    return ProcessResult(
        outcome="failed",
        exit_code=exit_code,
        output_tail="\n".join(tail),
        elapsed_ms=elapsed_ms,
        error=f"Command failed (exit {exit_code})",
    )


def _pump(proc: subprocess.Popen, lines: queue.Queue) -> None:
    assert proc.stdout is not None
    for line in proc.stdout:
        lines.put(line.rstrip("\r\n"))
    proc.stdout.close()
    lines.put(None)


def _kill(proc: subprocess.Popen) -> None:
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d did not exit after SIGKILL", proc.pid)


def spawn_detached(
    cmd: list[str],
    *,
    log_file: Path,
    cwd: Path | str | None = None,
) -> subprocess.Popen:
    """Start a long-running process with output appended to ``log_file``.

    The child gets its own session so a Ctrl-C aimed at the CLI does
    not reach it.

    Raises:
        OSError: If the program cannot be started.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Spawning: %s (log=%s)", " ".join(cmd), log_file)
    with log_file.open("ab") as log:
        return subprocess.Popen(
            cmd,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )


def run_inherited(cmd: list[str], *, cwd: Path | str | None = None) -> int:
    """Run ``cmd`` attached to the caller's stdin/stdout/stderr.

    Returns the child's exit code unchanged (negative for signals).

    Raises:
        OSError: If the program cannot be started.
    """
    logger.debug("Exec (inherited stdio): %s", " ".join(cmd))
    return subprocess.call(cmd, cwd=cwd)


def which(tool: str) -> str | None:
    return shutil.which(tool)


def command_version(tool: str, args: tuple[str, ...] = ("--version",)) -> str | None:
    """First non-empty output line of ``tool --version``, or None."""
    path = shutil.which(tool)
    if not path:
        return None
    result = run_process([path, *args], timeout=10)
    if result.outcome not in ("ok", "failed"):
        return None
    for line in result.output_tail.splitlines():
        if line.strip():
            return line.strip()
    return None
