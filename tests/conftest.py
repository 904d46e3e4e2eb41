"""Pytest configuration and fixtures for maple-sidecar tests."""

import io
import socket
import sys
import tarfile
import time
import zipfile
from pathlib import Path
from typing import Callable

import httpx
import pytest

from maple_sidecar.config import ProxyConfig, settings

RELEASE_BASE = "https://releases.test/download"
RELEASE_INDEX = "https://api.test/repos/maple/releases/latest"


@pytest.fixture(autouse=True)
def sidecar_settings(tmp_path: Path, monkeypatch):
    """Point the cache at a temp dir and make timings test-sized."""
    cache_dir = tmp_path / "cache"
    monkeypatch.setattr(settings, "cache_dir", cache_dir)
    monkeypatch.setattr(settings, "release_base_url", RELEASE_BASE)
    monkeypatch.setattr(settings, "release_index_url", RELEASE_INDEX)
    monkeypatch.setattr(settings, "health_timeout", 10.0)
    monkeypatch.setattr(settings, "health_interval", 0.05)
    monkeypatch.setattr(settings, "restart_backoff", 0.05)
    monkeypatch.setattr(settings, "shutdown_grace", 1.0)
    return settings


@pytest.fixture
def cache_dir(sidecar_settings) -> Path:
    return Path(sidecar_settings.cache_dir)


class MockRelease:
    """Routes for httpx.MockTransport that record every request."""

    def __init__(self):
        self.routes: dict[str, httpx.Response | Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[str] = []

    def add(self, url: str, response):
        self.routes[url] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="Not Found")
        if callable(route):
            return route(request)
        return route

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def mock_release():
    release = MockRelease()
    yield release


@pytest.fixture
def http(mock_release):
    client = mock_release.client()
    yield client
    client.close()


def build_tar_gz(files: dict[str, bytes]) -> bytes:
    bio = io.BytesIO()
    with tarfile.open(fileobj=bio, mode="w:gz") as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(content))
    return bio.getvalue()


def build_zip(files: dict[str, bytes]) -> bytes:
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return bio.getvalue()


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def proxy_config(free_port) -> ProxyConfig:
    return ProxyConfig(api_key="test-key", port=free_port)


# A stand-in for maple-proxy: serves /health on MAPLE_HOST:MAPLE_PORT.
# FAKE_RUNS counts launches; FAKE_BEHAVIOR selects how each launch behaves.
FAKE_PROXY = '''#!{python}
import http.server
import json
import os
import sys
import threading
import time
from pathlib import Path

runs_file = os.environ.get("FAKE_RUNS")
run = 1
if runs_file:
    path = Path(runs_file)
    run = int(path.read_text()) + 1 if path.exists() else 1
    path.write_text(str(run))

if os.environ.get("FAKE_ENV_DUMP"):
    keys = ["MAPLE_HOST", "MAPLE_PORT", "MAPLE_API_KEY", "MAPLE_BACKEND_URL", "MAPLE_DEBUG", "FAKE_INHERITED"]
    Path(os.environ["FAKE_ENV_DUMP"]).write_text(json.dumps({{k: os.environ.get(k) for k in keys}}))

behavior = os.environ.get("FAKE_BEHAVIOR", "healthy")

if behavior == "exit0":
    sys.exit(0)
if behavior == "hang":
    while True:
        time.sleep(1)
if behavior == "crash_after_first" and run > 1:
    print("panic: startup failure", file=sys.stderr, flush=True)
    sys.exit(1)
if behavior in ("crash_after_first", "crash_once") and run == 1:
    threading.Timer(1.0, os._exit, args=(1,)).start()


class Handler(http.server.BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/health":
            self.send_response(200)
            self.end_headers()
            self.wfile.write(b"ok")
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, *args):
        pass


print("listening on port " + os.environ["MAPLE_PORT"], flush=True)
http.server.HTTPServer((os.environ["MAPLE_HOST"], int(os.environ["MAPLE_PORT"])), Handler).serve_forever()
'''


@pytest.fixture
def fake_proxy(tmp_path: Path, monkeypatch) -> Callable[..., Path]:
    """Write an executable fake maple-proxy and configure its behavior via env."""
    if sys.platform == "win32":
        pytest.skip("fake maple-proxy relies on a POSIX shebang")

    def make(behavior: str = "healthy") -> Path:
        path = tmp_path / "bin" / "maple-proxy"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(FAKE_PROXY.format(python=sys.executable))
        path.chmod(0o755)
        monkeypatch.setenv("FAKE_BEHAVIOR", behavior)
        monkeypatch.setenv("FAKE_RUNS", str(tmp_path / "runs"))
        return path

    return make


def read_runs(tmp_path: Path) -> int:
    runs = tmp_path / "runs"
    return int(runs.read_text()) if runs.exists() else 0
