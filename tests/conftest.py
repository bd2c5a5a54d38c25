"""Shared pytest fixtures for lspmux tests.

Provides an in-memory stdio pair and a scripted fake language server so the
transport, connection and registry can be exercised without real binaries.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from lspmux.config import LspSettings
from lspmux.launcher import SpawnedServer
from lspmux.roots import marker_root
from lspmux.servers import ServerConfig


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory for file operations."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def ts_project(temp_workspace: Path) -> Path:
    """A project with package.json at its root and two TypeScript files."""
    proj = temp_workspace / "proj"
    (proj / "src").mkdir(parents=True)
    (proj / "package.json").write_text("{}\n")
    (proj / "src" / "a.ts").write_text("export const a = 1;\n")
    (proj / "src" / "b.ts").write_text("export const b = 2;\n")
    return proj


@pytest.fixture
def settings() -> LspSettings:
    """Short timeouts so failing tests do not hang."""
    return LspSettings(
        request_timeout=2.0,
        initialize_timeout=2.0,
        shutdown_timeout=0.5,
        diagnostics_timeout=0.5,
    )


# ============================================================================
# Fake stdio
# ============================================================================

class FakeWriter:
    """Collects written bytes and reports each complete line."""

    def __init__(self, on_line: Callable[[bytes], None] | None = None) -> None:
        self.data = bytearray()
        self.closed = False
        self._buffer = bytearray()
        self._on_line = on_line

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("writer closed")
        self.data.extend(data)
        self._buffer.extend(data)
        while b"\n" in self._buffer:
            line, _, rest = bytes(self._buffer).partition(b"\n")
            self._buffer = bytearray(rest)
            if self._on_line is not None:
                self._on_line(line)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in bytes(self.data).splitlines() if line.strip()]


def encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message).encode("utf-8") + b"\n"


async def until(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    """Yield to the event loop until *predicate()* is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


# ============================================================================
# Fake language server
# ============================================================================

class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    _next_pid = 4000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeWriter()
        self._exited = asyncio.Event()
        self.killed = False

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    def terminate(self) -> None:
        self.exit(-15)


class FakeLanguageServer:
    """Scripted server speaking newline-delimited JSON-RPC over a FakeProcess.

    Requests whose method is in ``results`` are answered immediately; methods
    in ``held`` are recorded and answered later via :meth:`respond`.
    ``notification_hooks`` react to client notifications such as didOpen.
    """

    def __init__(self, process: FakeProcess | None = None) -> None:
        self.process = process or FakeProcess()
        self.process.stdin._on_line = self._on_line
        self.received: list[dict[str, Any]] = []
        self.results: dict[str, Any] = {
            "initialize": {"capabilities": {"hoverProvider": True}},
            "shutdown": None,
        }
        self.errors: dict[str, dict[str, Any]] = {}
        self.held: set[str] = set()
        self.held_requests: list[dict[str, Any]] = []
        self.notification_hooks: dict[str, Callable[[Any], None]] = {}

    def _on_line(self, line: bytes) -> None:
        if not line.strip():
            return
        message = json.loads(line)
        self.received.append(message)
        method = message.get("method")
        if "id" not in message:
            if method == "exit":
                self.process.exit(0)
            elif method in self.notification_hooks:
                self.notification_hooks[method](message.get("params"))
            return
        if method in self.held:
            self.held_requests.append(message)
        elif method in self.errors:
            self.send({"jsonrpc": "2.0", "id": message["id"], "error": self.errors[method]})
        elif method in self.results:
            self.respond(message["id"], self.results[method])

    def send(self, message: dict[str, Any]) -> None:
        self.process.stdout.feed_data(encode(message))

    def respond(self, request_id: Any, result: Any) -> None:
        self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def notify(self, method: str, params: Any) -> None:
        self.send({"jsonrpc": "2.0", "method": method, "params": params})

    def publish_diagnostics(self, uri: str, diagnostics: list[dict[str, Any]]) -> None:
        self.notify("textDocument/publishDiagnostics", {"uri": uri, "diagnostics": diagnostics})

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.received if m.get("method") == method and "id" in m]

    def notifications(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.received if m.get("method") == method and "id" not in m]


class FakeSpawner:
    """Spawn function that records every fake server it starts."""

    def __init__(self) -> None:
        self.servers: list[FakeLanguageServer] = []
        self.roots: list[str] = []
        self.settings: list[LspSettings] = []
        self.available = True
        self.configure: Callable[[FakeLanguageServer], None] | None = None

    async def __call__(self, root: str, settings: LspSettings) -> SpawnedServer | None:
        self.roots.append(root)
        self.settings.append(settings)
        if not self.available:
            return None
        server = FakeLanguageServer()
        if self.configure is not None:
            self.configure(server)
        self.servers.append(server)
        return SpawnedServer(process=server.process)  # type: ignore[arg-type]

    @property
    def spawn_count(self) -> int:
        return len(self.servers)


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def ts_config(fake_spawner: FakeSpawner) -> ServerConfig:
    """A ``.ts`` server rooted at the nearest package.json."""
    return ServerConfig(
        id="typescript",
        extensions=(".ts",),
        find_root=marker_root("package.json"),
        spawn=fake_spawner,
        language_ids={".ts": "typescript"},
    )
