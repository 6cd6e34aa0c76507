"""
Shared test fixtures and configuration.

The managed runtime is replaced by a small Python script with a
``sys.executable`` shebang: ``coordinator`` listens on the control
port, ``daemon`` sleeps, ``--version`` prints a version line and
``list`` prints ``$FAKE_DORA_DATAFLOWS`` (comma separated).  The
release catalog is a local ``http.server`` thread.
"""

from __future__ import annotations

import io
import json
import os
import signal
import socket
import sys
import tarfile
import threading
import zipfile
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable

import pytest
import toml

FAKE_DORA = """#!@PYTHON@
import os
import socket
import sys
import time

args = sys.argv[1:]


def opt(name, default=None):
    if name in args:
        return args[args.index(name) + 1]
    return default


if args[:1] == ["--version"]:
    print("dora-cli @VERSION@")
    sys.exit(0)

if args[:1] == ["coordinator"]:
    if os.environ.get("FAKE_DORA_COORDINATOR_FAIL"):
        print("coordinator: failed to bind", flush=True)
        sys.exit(3)
    sock = socket.socket()
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((opt("--interface", "127.0.0.1"), int(opt("--control-port"))))
    sock.listen(8)
    print("coordinator listening", flush=True)
    while True:
        conn, _ = sock.accept()
        conn.close()

if args[:1] == ["daemon"]:
    if os.environ.get("FAKE_DORA_DAEMON_FAIL"):
        print("daemon: cannot reach coordinator", flush=True)
        sys.exit(4)
    print("daemon running", flush=True)
    while True:
        time.sleep(0.1)

if args[:1] == ["destroy"]:
    sys.exit(0)

if args[:1] == ["check"]:
    print("Dora Coordinator: ok")
    print("Dora Daemon: ok")
    sys.exit(0)

if args[:1] == ["list"]:
    if os.environ.get("FAKE_DORA_LIST_FAIL"):
        print("list: coordinator unreachable")
        sys.exit(1)
    flows = os.environ.get("FAKE_DORA_DATAFLOWS", "")
    print("\\n".join(flows.split(",")) if flows else "No running dataflow")
    sys.exit(0)

print("args:", " ".join(args))
sys.exit(int(os.environ.get("FAKE_DORA_EXIT", "0")))
"""


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def write_fake_dora(path: Path, version: str = "0.0.0") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    script = FAKE_DORA.replace("@PYTHON@", sys.executable).replace("@VERSION@", version)
    path.write_text(script)
    path.chmod(0o755)
    return path


def _kill_recorded(home: Path) -> None:
    for pid_file in (home / "run").glob("*.pid"):
        try:
            pid = json.loads(pid_file.read_text())["pid"]
            if pid == os.getpid():
                continue
            os.kill(pid, signal.SIGKILL)
        except (OSError, ValueError, KeyError):
            pass


@pytest.fixture
def dm_home(tmp_path: Path):
    """A dm home with free runtime ports and short timeouts.

    The release catalog points at a closed port, so any network call
    fails fast with NetworkError unless a test installs ``catalog``.
    """
    home = tmp_path / "dmhome"
    home.mkdir()
    config = {
        "install": {
            "api_url": f"http://127.0.0.1:{free_port()}",
            "http_timeout": 5.0,
        },
        "runtime": {
            "interface": "127.0.0.1",
            "coordinator_port": free_port(),
            "control_port": free_port(),
            "ready_timeout": 5.0,
            "stop_grace": 2.0,
            "daemon_settle": 0.3,
        },
    }
    (home / "config.toml").write_text(toml.dumps(config))
    yield home
    _kill_recorded(home)


@pytest.fixture(autouse=True)
def _fresh_engine_state():
    """Clear process-wide caches and supervisors between tests."""
    from dm.core.services.install.release_client import clear_release_cache

    clear_release_cache()
    yield
    from dm.core.services.runtime.supervisor import forget_supervisors

    forget_supervisors()
    clear_release_cache()


@pytest.fixture
def fake_dora() -> Callable[..., Path]:
    """Factory: write a fake dora script at a path."""
    return write_fake_dora


@pytest.fixture
def make_installed(dm_home: Path) -> Callable[..., Path]:
    """Factory: put a fake version directly into the store."""
    from dm.core.models.version import InstalledVersion
    from dm.core.services import version_registry as registry

    def _make(version: str, *, active: bool = False, installed_at: str | None = None) -> Path:
        directory = dm_home / "versions" / version
        binary = write_fake_dora(directory / "dora", version)
        installed = InstalledVersion(version=version, path=directory, binary_path=binary, method="binary")
        if installed_at:
            installed.installed_at = installed_at
        registry.write_metadata(directory, installed)
        if active:
            registry.set_active(dm_home, version)
        return directory

    return _make


# ── Host tools ──────────────────────────────────────────────────

FAKE_PIP = """#!@PYTHON@
import os
import sys
from pathlib import Path

if os.environ.get("FAKE_PIP_FAIL"):
    print("ERROR: Could not find a version that satisfies the requirement uv")
    sys.exit(1)
uv = Path(__file__).parent / "uv"
uv.write_text("#!@PYTHON@\\nprint('uv 0.5.0')\\n")
uv.chmod(0o755)
print("Successfully installed uv-0.5.0")
"""


def write_tool(bin_dir: Path, name: str, version_line: str) -> Path:
    path = bin_dir / name
    path.write_text(f"#!{sys.executable}\nprint({version_line!r})\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def toolbox(tmp_path: Path, monkeypatch) -> Path:
    """A PATH holding only fake python3/pip3/uv/git/cargo.

    ``pip3 install uv`` drops a fake uv next to itself.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    write_tool(bin_dir, "python3", "Python 3.12.1")
    write_tool(bin_dir, "uv", "uv 0.4.18")
    write_tool(bin_dir, "git", "git version 2.43.0")
    write_tool(bin_dir, "cargo", "cargo 1.80.0")
    pip = bin_dir / "pip3"
    pip.write_text(FAKE_PIP.replace("@PYTHON@", sys.executable))
    pip.chmod(0o755)
    monkeypatch.setenv("PATH", str(bin_dir))
    return bin_dir


# ── Artifacts ───────────────────────────────────────────────────


def _tarball(members: dict[str, tuple[bytes, int]]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, (data, mode) in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _zipball(members: dict[str, tuple[bytes, int]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, (data, mode) in members.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (0o100000 | mode) << 16
            zf.writestr(info, data)
    return buf.getvalue()


@pytest.fixture
def tarball() -> Callable[[dict[str, tuple[bytes, int]]], bytes]:
    """Factory: gzip tar bytes from {name: (data, mode)}."""
    return _tarball


@pytest.fixture
def zipball() -> Callable[[dict[str, tuple[bytes, int]]], bytes]:
    """Factory: zip bytes from {name: (data, mode)}."""
    return _zipball


@pytest.fixture
def dora_tarball() -> Callable[[str], bytes]:
    """Factory: a release-style archive holding a fake dora."""

    def _make(version: str = "1.2.0") -> bytes:
        script = FAKE_DORA.replace("@PYTHON@", sys.executable).replace("@VERSION@", version)
        return _tarball({
            "dora-cli/dora": (script.encode(), 0o755),
            "dora-cli/README.md": (b"# dora\n", 0o644),
        })

    return _make


# ── Release catalog ─────────────────────────────────────────────


class _CatalogHandler(BaseHTTPRequestHandler):
    def do_GET(self):  # noqa: N802
        server = self.server
        with server.lock:
            server.requests.append(self.path)
            route = server.routes.get(self.path)
        if route is None:
            status, body, headers = 404, b'{"message": "Not Found"}', {}
        else:
            status, body, headers = route
        self.send_response(status)
        for key, value in headers.items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # noqa: A002
        pass


class Catalog:
    """Handle on the local release catalog server."""

    def __init__(self, server: ThreadingHTTPServer, repository: str = "dora-rs/dora"):
        self.server = server
        self.base = f"http://127.0.0.1:{server.server_port}"
        self.repository = repository

    @property
    def requests(self) -> list[str]:
        with self.server.lock:
            return list(self.server.requests)

    def route(self, path: str, body: bytes, status: int = 200, headers: dict | None = None) -> None:
        with self.server.lock:
            self.server.routes[path] = (status, body, headers or {})

    def release(self, tag: str, assets: dict[str, bytes], *, latest: bool = False) -> None:
        """Publish ``tag`` with the given asset files."""
        payload = {
            "tag_name": tag,
            "assets": [
                {
                    "name": name,
                    "size": len(data),
                    "browser_download_url": f"{self.base}/assets/{tag}/{name}",
                }
                for name, data in assets.items()
            ],
        }
        body = json.dumps(payload).encode()
        self.route(f"/repos/{self.repository}/releases/tags/{tag}", body)
        if latest:
            self.route(f"/repos/{self.repository}/releases/latest", body)
        for name, data in assets.items():
            self.route(f"/assets/{tag}/{name}", data)

    def release_list(self, tags: list[str], limit: int = 10) -> None:
        body = json.dumps([{"tag_name": t} for t in tags]).encode()
        self.route(f"/repos/{self.repository}/releases?per_page={limit}", body)


@pytest.fixture
def catalog(dm_home: Path):
    """Local release catalog wired into ``dm_home``'s config."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _CatalogHandler)
    server.routes = {}
    server.requests = []
    server.lock = threading.Lock()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    cat = Catalog(server)
    config_file = dm_home / "config.toml"
    config = toml.loads(config_file.read_text())
    config["install"]["api_url"] = cat.base
    config_file.write_text(toml.dumps(config))

    yield cat
    server.shutdown()
    server.server_close()


@pytest.fixture
def host_asset_name() -> str:
    """Release asset name the platform resolver picks on this host."""
    from dm.core.errors import UnsupportedPlatform
    from dm.core.services.install.platform import resolve_target

    try:
        target = resolve_target()
    except UnsupportedPlatform:
        pytest.skip("no prebuilt dora naming for this host")
    return f"dora-cli-{target.triple}-gnu.tar.gz"
