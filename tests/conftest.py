import sys
import asyncio
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiohttp import web

from nodelauncher.local import app_globals
from nodelauncher.local.chains import ChainDefinition, ChainPaths

PLATFORM = sys.platform

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake chains are POSIX scripts")


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Points every persisted file at the test's temporary directory."""
    user_dir = tmp_path / "user"
    monkeypatch.setattr(app_globals, "USER_DATA_DIR", user_dir)
    monkeypatch.setattr(app_globals, "DOWNLOAD_TIMESTAMPS_PATH", user_dir / "downloads.json")
    monkeypatch.setattr(app_globals, "OVERRIDES_JSON_PATH", user_dir / "overrides.json")
    monkeypatch.setattr(app_globals, "LOG_DB_PATH", user_dir / "logs" / "launcher_logs.db")
    return user_dir


@pytest.fixture
def chain_paths(tmp_path) -> ChainPaths:
    return ChainPaths(tmp_path / "downloads", tmp_path / "home", PLATFORM)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
    """Polls ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


def make_definition(chain_id: str, dependencies=(), **extra: Any) -> ChainDefinition:
    """A chain whose binary is ``<downloads>/<id>/bin/<id>`` and data dir ``<home>/data/<id>``."""
    entry = {
        "id": chain_id,
        "display_name": chain_id.title(),
        "binary": {PLATFORM: f"bin/{chain_id}"},
        "extract_dir": {PLATFORM: chain_id},
        "data_dir": {PLATFORM: f"data/{chain_id}"},
        "download_urls": {PLATFORM: f"http://127.0.0.1:1/{chain_id}.zip"},
        "dependencies": list(dependencies),
    }
    entry.update(extra)
    return ChainDefinition.from_dict(entry)


def definitions_of(*definitions: ChainDefinition) -> Dict[str, ChainDefinition]:
    return {definition.id: definition for definition in definitions}


def install_script(paths: ChainPaths, definition: ChainDefinition, body: str) -> Path:
    """Installs a Python script as the chain's binary."""
    binary = paths.binary_path(definition)
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    binary.chmod(0o755)
    return binary


# Prints a line, then idles until terminated.
SERVE_FOREVER = """
    import sys, time
    print("ready", flush=True)
    while True:
        time.sleep(0.1)
"""

# Ignores SIGTERM, so only a kill stops it.
IGNORE_TERM = """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    while True:
        time.sleep(0.1)
"""

# Produces no output at all.
SILENT = """
    import time
    while True:
        time.sleep(0.1)
"""


class FileServer:
    """
    Local HTTP server for download tests. Honours Range requests and can be
    told to cut connections short or to stream slowly.
    """

    def __init__(self, files: Dict[str, bytes], chunk_size: int = 4096, delay: float = 0.0):
        self.files = files
        self.chunk_size = chunk_size
        self.delay = delay
        self.ignore_range = False
        self.truncate_next = 0
        self.status_override: Optional[int] = None
        self.range_headers: List[Optional[str]] = []
        self._runner: Optional[web.AppRunner] = None
        self.base_url = ""

    def url(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        self.range_headers.append(request.headers.get("Range"))
        if self.status_override is not None:
            return web.Response(status=self.status_override)
        data = self.files.get(request.match_info["name"])
        if data is None:
            return web.Response(status=404)

        start, status = 0, 200
        range_header = request.headers.get("Range")
        if range_header and not self.ignore_range:
            start = int(range_header.split("=", 1)[1].split("-", 1)[0])
            if start >= len(data):
                return web.Response(status=416)
            status = 206

        body = data[start:]
        response = web.StreamResponse(status=status)
        response.content_length = len(body)
        if status == 206:
            response.headers["Content-Range"] = f"bytes {start}-{len(data) - 1}/{len(data)}"
        await response.prepare(request)

        truncate = self.truncate_next > 0
        if truncate:
            self.truncate_next -= 1
        for offset in range(0, len(body), self.chunk_size):
            if truncate and offset >= len(body) // 2:
                # Drop the connection mid-body.
                request.transport.close()
                return response
            await response.write(body[offset:offset + self.chunk_size])
            if self.delay:
                await asyncio.sleep(self.delay)
        await response.write_eof()
        return response

    async def __aenter__(self) -> "FileServer":
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        host, port = self._runner.addresses[0][:2]
        self.base_url = f"http://{host}:{port}"
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self._runner.cleanup()
