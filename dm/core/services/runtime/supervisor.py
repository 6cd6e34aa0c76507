"""
Runtime supervisor — coordinator and daemon lifecycle.

    Stopped → Starting → Running → Stopping → Stopped
                            └──→ Crashed   (seen at the next status)

``up`` starts the coordinator, waits until its control port accepts
connections, then starts the daemon.  ``down`` stops them in reverse
order.  ``status`` is a liveness probe that never raises; while the
coordinator runs it also asks the binary for its version and dataflows.

Processes spawned by this interpreter are owned through a
``ProcessHandle``.  Every start also writes ``<home>/run/<role>.pid``
so a later invocation can observe (and stop) a runtime it did not
spawn; those pid files are advisory and are checked against the
recorded binary before any signal is sent.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

from dm.core.config.loader import RuntimeSettings, load_config, run_dir
from dm.core.errors import (
    AlreadyRunning,
    DmError,
    NotRunning,
    SpawnError,
    StopError,
)
from dm.core.models.runtime import ProcessInfo, ProcessState, RuntimeStatus
from dm.core.persistence.atomic_file import atomic_write_text
from dm.core.persistence.events import OperationEvent
from dm.core.services.process_runner import run_inherited, run_process, spawn_detached
from dm.core.services.version_registry import active_binary, binary_version, get_active

logger = logging.getLogger(__name__)

COORDINATOR = "coordinator"
DAEMON = "daemon"
STOP_ORDER = (DAEMON, COORDINATOR)

_POLL_INTERVAL = 0.1
_KILL_WAIT = 5.0
_LOG_TAIL_LINES = 20
_QUERY_TIMEOUT = 10.0
_NO_DATAFLOWS = "No running dataflow"
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


# ── Process handle ──────────────────────────────────────────────


class ProcessHandle:
    """Ownership of one spawned coordinator or daemon process.

    ``stop()`` is the only teardown path.  A handle dropped while its
    process is still running kills it, unless ``release()`` handed
    the process over to the pid file.
    """

    def __init__(self, role: str, popen: subprocess.Popen, log_file: Path, log_offset: int = 0):
        self.role = role
        self.popen = popen
        self.pid = popen.pid
        self.started_at = datetime.now(UTC).isoformat()
        self.log_file = log_file
        self.log_offset = log_offset
        self._released = False

    def alive(self) -> bool:
        return self.popen.poll() is None

    def release(self) -> None:
        """Stop owning the process; it keeps running after we exit."""
        self._released = True

    def log_tail(self) -> str:
        return _read_log_tail(self.log_file, self.log_offset)

    def stop(self, grace: float) -> bool:
        """Terminate, wait up to ``grace`` seconds, then kill.

        Returns:
            True if the process had to be killed.

        Raises:
            StopError: The process could not be signalled or survived SIGKILL.
        """
        self._released = True
        if not self.alive():
            return False

        logger.debug("Stopping %s (pid %d)", self.role, self.pid)
        try:
            self.popen.terminate()
        except OSError as e:
            raise StopError(self.role, f"cannot signal pid {self.pid}: {e}") from e
        try:
            self.popen.wait(timeout=grace)
            return False
        except subprocess.TimeoutExpired:
            pass

        logger.warning("%s (pid %d) ignored SIGTERM for %.1fs — killing", self.role, self.pid, grace)
        self.popen.kill()
        try:
            self.popen.wait(timeout=_KILL_WAIT)
        except subprocess.TimeoutExpired as e:
            raise StopError(self.role, f"pid {self.pid} survived SIGKILL") from e
        return True

    def to_info(self) -> ProcessInfo:
        return ProcessInfo(
            state=ProcessState.RUNNING if self.alive() else ProcessState.STOPPED,
            pid=self.pid,
            owned=True,
            started_at=self.started_at,
        )

    def __del__(self):
        if self._released:
            return
        try:
            if self.popen.poll() is None:
                self.popen.kill()
        except Exception:
            pass


# ── Pid files ───────────────────────────────────────────────────


def _pid_path(home: Path, role: str) -> Path:
    return run_dir(home) / f"{role}.pid"


def _log_path(home: Path, role: str) -> Path:
    return run_dir(home) / f"{role}.log"


def _write_pid_file(home: Path, handle: ProcessHandle, binary: Path) -> None:
    record = {
        "pid": handle.pid,
        "started_at": handle.started_at,
        "binary": str(binary),
    }
    atomic_write_text(_pid_path(home, handle.role), json.dumps(record, indent=2) + "\n")


def _read_pid_file(home: Path, role: str) -> dict | None:
    path = _pid_path(home, role)
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug("Ignoring unreadable pid file %s: %s", path, e)
        return None
    if not isinstance(record, dict) or not isinstance(record.get("pid"), int):
        return None
    return record


def _remove_pid_file(home: Path, role: str) -> None:
    _pid_path(home, role).unlink(missing_ok=True)


def _read_log_tail(path: Path, offset: int = 0, lines: int = _LOG_TAIL_LINES) -> str:
    try:
        with path.open("rb") as f:
            f.seek(offset)
            data = f.read()
    except OSError:
        return ""
    text = data.decode("utf-8", errors="replace")
    return "\n".join(text.splitlines()[-lines:])


# ── Liveness probes ─────────────────────────────────────────────


def _pid_state(pid: int) -> ProcessState:
    """Existence check for a pid this interpreter may not own."""
    if os.name == "nt":
        return ProcessState.UNKNOWN

    # Reap our own exited children so they don't linger as zombies
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return ProcessState.STOPPED
    except ChildProcessError:
        pass

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return ProcessState.STOPPED
    except PermissionError:
        return ProcessState.UNKNOWN
    except OSError as e:
        if e.errno == errno.ESRCH:
            return ProcessState.STOPPED
        return ProcessState.UNKNOWN
    return ProcessState.RUNNING


def _pid_runs_binary(pid: int, binary: str) -> bool:
    """Whether ``pid`` still runs ``binary`` (assumed True without /proc)."""
    if not sys.platform.startswith("linux"):
        return True
    try:
        args = Path(f"/proc/{pid}/cmdline").read_bytes().split(b"\0")
    except OSError:
        return False
    return os.fsencode(binary) in args


def _wait_pid_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        if _pid_state(pid) == ProcessState.STOPPED:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(_POLL_INTERVAL)


def _recorded_state(record: dict | None) -> ProcessInfo:
    if record is None:
        return ProcessInfo()
    pid = record["pid"]
    state = _pid_state(pid)
    if state == ProcessState.RUNNING and not _pid_runs_binary(pid, record.get("binary", "")):
        # pid was reused by an unrelated program
        state = ProcessState.STOPPED
    if state == ProcessState.STOPPED:
        return ProcessInfo()
    return ProcessInfo(state=state, pid=pid, owned=False, started_at=record.get("started_at"))


def _probe_host(interface: str) -> str:
    return "127.0.0.1" if interface in ("0.0.0.0", "") else interface


def _port_open(host: str, port: int, timeout: float = 0.2) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ── Supervisor ──────────────────────────────────────────────────


class RuntimeSupervisor:
    """Owns the coordinator/daemon handles for one home directory."""

    def __init__(self, home: Path):
        self.home = home
        self._handles: dict[str, ProcessHandle] = {}
        self._lock = threading.RLock()

    # ── queries ──

    def _role_info(self, role: str) -> ProcessInfo:
        handle = self._handles.get(role)
        if handle is not None:
            if handle.alive():
                return handle.to_info()
            logger.warning(
                "%s (pid %d) exited with code %s", role, handle.pid, handle.popen.returncode
            )
            del self._handles[role]
            _remove_pid_file(self.home, role)
            return ProcessInfo()
        return _recorded_state(_read_pid_file(self.home, role))

    def probe(self) -> RuntimeStatus:
        with self._lock:
            try:
                active = get_active(self.home)
            except DmError as e:
                logger.debug("Cannot read active version: %s", e)
                active = None
            return RuntimeStatus(
                coordinator=self._role_info(COORDINATOR),
                daemon=self._role_info(DAEMON),
                active_version=active,
                home=str(self.home),
            )

    def status(self) -> RuntimeStatus:
        """Liveness, plus what the binary reports while the coordinator runs."""
        st = self.probe()
        if st.coordinator.state == ProcessState.RUNNING:
            self._fill_runtime_details(st)
        return st

    def _fill_runtime_details(self, st: RuntimeStatus) -> None:
        try:
            binary = active_binary(self.home)
        except DmError as e:
            logger.debug("No binary to query: %s", e)
            return

        st.actual_version = binary_version(binary)

        check = run_process([str(binary), "check"], timeout=_QUERY_TIMEOUT, cwd=self.home)
        st.runtime_output = check.output_tail.strip() or check.error

        listing = run_process([str(binary), "list"], timeout=_QUERY_TIMEOUT, cwd=self.home)
        if listing.ok:
            st.dataflows = [
                line.strip()
                for line in listing.output_tail.splitlines()
                if line.strip() and _NO_DATAFLOWS not in line
            ]
        else:
            logger.debug("dora list failed: %s", listing.error or listing.output_tail)

    # ── up ──

    def _spawn(self, role: str, cmd: list[str], binary: Path) -> ProcessHandle:
        log_file = _log_path(self.home, role)
        offset = log_file.stat().st_size if log_file.exists() else 0
        try:
            popen = spawn_detached(cmd, log_file=log_file, cwd=self.home)
        except OSError as e:
            raise SpawnError(role, f"cannot start {binary}: {e}") from e
        handle = ProcessHandle(role, popen, log_file, offset)
        _write_pid_file(self.home, handle, binary)
        logger.info("Started %s (pid %d)", role, handle.pid)
        return handle

    def _wait_coordinator(self, handle: ProcessHandle, settings: RuntimeSettings) -> None:
        host = _probe_host(settings.interface)
        deadline = time.monotonic() + settings.ready_timeout
        while True:
            if not handle.alive():
                raise SpawnError(
                    COORDINATOR,
                    f"exited during startup (code {handle.popen.returncode})",
                    details=handle.log_tail(),
                )
            if _port_open(host, settings.control_port):
                return
            if time.monotonic() > deadline:
                raise SpawnError(
                    COORDINATOR,
                    f"not ready after {settings.ready_timeout}s "
                    f"(control port {settings.control_port} closed)",
                    details=handle.log_tail(),
                )
            time.sleep(_POLL_INTERVAL)

    def _wait_daemon(self, handle: ProcessHandle, settings: RuntimeSettings) -> None:
        deadline = time.monotonic() + settings.daemon_settle
        while time.monotonic() < deadline:
            if not handle.alive():
                raise SpawnError(
                    DAEMON,
                    f"exited during startup (code {handle.popen.returncode})",
                    details=handle.log_tail(),
                )
            time.sleep(_POLL_INTERVAL)

    def up(self, *, detach: bool = False) -> RuntimeStatus:
        """Start coordinator then daemon for the active version.

        Args:
            detach: Hand the processes over to their pid files so they
                outlive this interpreter (the CLI does this).

        Raises:
            NoActiveVersion, BinaryMissing, AlreadyRunning, SpawnError.
        """
        with OperationEvent(self.home, "runtime.up", detach=detach) as op, self._lock:
            binary = active_binary(self.home)
            current = self.probe()
            if not current.stopped:
                pid = current.coordinator.pid or current.daemon.pid
                raise AlreadyRunning(
                    f"dora runtime is already running (pid {pid}). Run `dm down` first."
                )

            settings = load_config(self.home).runtime
            host = _probe_host(settings.interface)
            if _port_open(host, settings.control_port):
                raise AlreadyRunning(
                    f"Control port {host}:{settings.control_port} is already in use "
                    "(a dora coordinator started outside dm?)"
                )

            run_dir(self.home).mkdir(parents=True, exist_ok=True)
            started: list[ProcessHandle] = []
            try:
                coordinator = self._spawn(
                    COORDINATOR,
                    [
                        str(binary), "coordinator",
                        "--interface", settings.interface,
                        "--port", str(settings.coordinator_port),
                        "--control-port", str(settings.control_port),
                    ],
                    binary,
                )
                started.append(coordinator)
                self._wait_coordinator(coordinator, settings)

                daemon = self._spawn(
                    DAEMON,
                    [
                        str(binary), "daemon",
                        "--coordinator-addr", host,
                        "--coordinator-port", str(settings.coordinator_port),
                    ],
                    binary,
                )
                started.append(daemon)
                self._wait_daemon(daemon, settings)
            except BaseException:
                for handle in reversed(started):
                    try:
                        handle.stop(settings.stop_grace)
                    except StopError as e:
                        logger.error("Rollback failed: %s", e)
                    _remove_pid_file(self.home, handle.role)
                raise

            if detach:
                for handle in started:
                    handle.release()
            else:
                self._handles = {h.role: h for h in started}

            op.attrs["coordinator_pid"] = coordinator.pid
            op.attrs["daemon_pid"] = daemon.pid
            status = RuntimeStatus(
                coordinator=coordinator.to_info(),
                daemon=daemon.to_info(),
                active_version=get_active(self.home),
                home=str(self.home),
            )
            if detach:
                status.coordinator.owned = False
                status.daemon.owned = False
            return status

    # ── down ──

    def _destroy(self, binary: str, settings: RuntimeSettings) -> None:
        """Ask the runtime itself to shut down (``dora destroy``)."""
        result = run_process(
            [binary, "destroy"],
            timeout=settings.stop_grace + _KILL_WAIT,
            cwd=self.home,
        )
        if not result.ok:
            logger.warning("dora destroy failed: %s\n%s", result.error, result.output_tail)

    def _stop_recorded(self, role: str, record: dict, grace: float) -> None:
        pid = record["pid"]
        if _wait_pid_exit(pid, grace):
            return
        if not _pid_runs_binary(pid, record.get("binary", "")):
            return
        for sig, wait in ((signal.SIGTERM, grace), (_SIGKILL, _KILL_WAIT)):
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return
            except PermissionError as e:
                raise StopError(role, f"not permitted to signal pid {pid}") from e
            if _wait_pid_exit(pid, wait):
                return
        raise StopError(role, f"pid {pid} survived SIGKILL")

    def down(self) -> RuntimeStatus:
        """Stop daemon then coordinator.

        Raises:
            NotRunning: Neither process is alive.
            StopError: Naming the process that could not be stopped.
        """
        with OperationEvent(self.home, "runtime.down") as op, self._lock:
            current = self.probe()
            if current.stopped:
                raise NotRunning("dora runtime is not running.")

            settings = load_config(self.home).runtime
            infos = {COORDINATOR: current.coordinator, DAEMON: current.daemon}
            records = {role: _read_pid_file(self.home, role) for role in STOP_ORDER}

            unowned = [
                role for role in STOP_ORDER
                if role not in self._handles and infos[role].state != ProcessState.STOPPED
            ]
            if unowned:
                binary = next(
                    (r["binary"] for r in records.values() if r and r.get("binary")), None
                )
                if binary and Path(binary).is_file():
                    self._destroy(binary, settings)

            errors: list[StopError] = []
            for role in STOP_ORDER:
                try:
                    handle = self._handles.pop(role, None)
                    if handle is not None:
                        handle.stop(settings.stop_grace)
                    elif infos[role].state != ProcessState.STOPPED and records[role]:
                        self._stop_recorded(role, records[role], settings.stop_grace)
                except StopError as e:
                    errors.append(e)
                    continue
                _remove_pid_file(self.home, role)

            if errors:
                for extra in errors[1:]:
                    logger.error("Also failed to stop %s", extra)
                raise errors[0]

            op.attrs["stopped"] = [r for r in STOP_ORDER if infos[r].state != ProcessState.STOPPED]
            return self.probe()

    # ── passthrough ──

    def passthrough(self, args: list[str]) -> int:
        """Run the active binary with ``args`` on the caller's stdio.

        Raises:
            NoActiveVersion, BinaryMissing, SpawnError.
        """
        with OperationEvent(self.home, "runtime.passthrough", args=list(args)) as op:
            binary = active_binary(self.home)
            try:
                code = run_inherited([str(binary), *args])
            except OSError as e:
                raise SpawnError("dora", f"cannot run {binary}: {e}") from e
            op.attrs["exit_code"] = code
            return code


# ── Per-home registry ───────────────────────────────────────────

_supervisors: dict[Path, RuntimeSupervisor] = {}
_registry_lock = threading.Lock()


def get_supervisor(home: Path) -> RuntimeSupervisor:
    key = Path(home).resolve()
    with _registry_lock:
        sup = _supervisors.get(key)
        if sup is None:
            sup = _supervisors[key] = RuntimeSupervisor(key)
        return sup


def forget_supervisors() -> None:
    """Drop every supervisor; owned processes are stopped first."""
    with _registry_lock:
        sups = list(_supervisors.values())
        _supervisors.clear()
    for sup in sups:
        for handle in list(sup._handles.values()):
            try:
                handle.stop(1.0)
            except StopError as e:
                logger.warning("%s", e)
        sup._handles.clear()


def up(home: Path, *, detach: bool = False) -> RuntimeStatus:
    return get_supervisor(home).up(detach=detach)


def down(home: Path) -> RuntimeStatus:
    return get_supervisor(home).down()


def status(home: Path) -> RuntimeStatus:
    """Current liveness of both processes, and the running dataflows.

    Never raises.
    """
    try:
        with OperationEvent(home, "runtime.status"):
            return get_supervisor(home).status()
    except Exception as e:
        logger.warning("Status probe failed: %s", e)
        return RuntimeStatus(home=str(home))


def passthrough(home: Path, args: list[str]) -> int:
    return get_supervisor(home).passthrough(args)
