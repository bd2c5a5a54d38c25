"""A live connection to one language server process.

Owns the process, its JSON-RPC transport, the open-document state and the
diagnostics cache. Document and request operations are only accepted while
the connection is ``ready``; anything else fails immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from lspmux.config import LspSettings
from lspmux.diagnostics import Diagnostic, DiagnosticsCache, Listener, Subscription
from lspmux.documents import DocumentSync, Range
from lspmux.errors import ConnectionClosedError, ConnectionStateError, LspError
from lspmux.framing import create_framing
from lspmux.launcher import terminate_process
from lspmux.paths import file_to_uri, normalize_path, uri_to_path
from lspmux.results import normalize_locations, normalize_symbols, ranges_overlap
from lspmux.transport import JsonRpcTransport

logger = logging.getLogger("lspmux.client")
server_logger = logging.getLogger("lspmux.server")

# window/logMessage and window/showMessage types
_MESSAGE_LEVELS: dict[int, int] = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}

_STDERR_CHUNK = 65536
# Longer stderr lines are cut when recorded
_STDERR_LINE_LIMIT = 8192

CLIENT_CAPABILITIES: dict[str, Any] = {
    "textDocument": {
        "synchronization": {
            "dynamicRegistration": False,
            "willSave": False,
            "willSaveWaitUntil": False,
            "didSave": True,
        },
        "hover": {
            "dynamicRegistration": False,
            "contentFormat": ["markdown", "plaintext"],
        },
        "signatureHelp": {
            "dynamicRegistration": False,
            "signatureInformation": {"documentationFormat": ["markdown", "plaintext"]},
        },
        "definition": {"dynamicRegistration": False, "linkSupport": True},
        "references": {"dynamicRegistration": False},
        "documentSymbol": {
            "dynamicRegistration": False,
            "hierarchicalDocumentSymbolSupport": True,
        },
        "codeAction": {
            "dynamicRegistration": False,
            "codeActionLiteralSupport": {
                "codeActionKind": {
                    "valueSet": [
                        "",
                        "quickfix",
                        "refactor",
                        "refactor.extract",
                        "refactor.inline",
                        "refactor.rewrite",
                        "source",
                        "source.organizeImports",
                    ]
                }
            },
        },
        "rename": {"dynamicRegistration": False, "prepareSupport": False},
        "publishDiagnostics": {
            "relatedInformation": True,
            "tagSupport": {"valueSet": [1, 2]},
        },
        "diagnostic": {"dynamicRegistration": False},
    },
    "workspace": {
        "symbol": {"dynamicRegistration": False},
        "workspaceFolders": True,
        "configuration": True,
    },
    "window": {"workDoneProgress": False},
}


class ConnectionState(str, Enum):
    SPAWNING = "spawning"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


class ServerProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` a connection uses."""

    stdin: Any
    stdout: Any
    stderr: Any
    pid: int
    returncode: int | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class LspConnection:
    """JSON-RPC client bound to one server process and project root."""

    def __init__(
        self,
        server_id: str,
        root: str,
        process: ServerProcess,
        *,
        framing: str = "newline",
        settings: LspSettings | None = None,
    ) -> None:
        """Wrap an already spawned process; call :meth:`initialize` next.

        Args:
            server_id: Id of the :class:`~lspmux.servers.ServerConfig`.
            root: Absolute project root the server is scoped to.
            process: The spawned server process with piped stdio.
            framing: Wire framing name.
            settings: Timeouts and limits; defaults when omitted.
        """
        self.server_id = server_id
        self.root = root
        self.process = process
        self._settings = settings or LspSettings()
        self._state = ConnectionState.SPAWNING
        self._close_reason: str | None = None
        self._tasks: list[asyncio.Task[Any]] = []

        self.name = f"{server_id}@{root}"
        self.transport = JsonRpcTransport(
            process.stdout,
            process.stdin,
            create_framing(framing),
            name=self.name,
            default_timeout=self._settings.request_timeout,
        )
        self.documents = DocumentSync(self.transport)
        self.diagnostics_cache = DiagnosticsCache()
        self.capabilities: dict[str, Any] | None = None
        self.stderr: deque[str] = deque(maxlen=self._settings.stderr_lines)

        self.transport.on_notification(
            "textDocument/publishDiagnostics", self._on_publish_diagnostics
        )
        self.transport.on_notification("window/logMessage", self._on_log_message)
        self.transport.on_notification("window/showMessage", self._on_log_message)
        self.transport.on_request("workspace/configuration", self._on_configuration)
        for method in (
            "client/registerCapability",
            "client/unregisterCapability",
            "window/workDoneProgress/create",
            "window/showMessageRequest",
        ):
            self.transport.on_request(method, lambda params: None)
        self.transport.add_close_callback(self._on_transport_closed)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is ConnectionState.CLOSED

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def __repr__(self) -> str:
        return f"<LspConnection {self.name} state={self._state.value}>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, init_options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Start reading, run the ``initialize``/``initialized`` handshake.

        Returns:
            The server's capabilities dict.

        Raises:
            LspError: If the handshake fails; the connection is closed first.
        """
        if self._state is not ConnectionState.SPAWNING:
            raise ConnectionStateError(
                f"{self.name}: cannot initialize in state {self._state.value}"
            )
        self._state = ConnectionState.INITIALIZING
        self.transport.start()
        self._tasks.append(
            asyncio.create_task(self._watch_process(), name=f"{self.name}-exit")
        )
        if self.process.stderr is not None:
            self._tasks.append(
                asyncio.create_task(self._read_stderr(), name=f"{self.name}-stderr")
            )

        root_uri = file_to_uri(self.root)
        params: dict[str, Any] = {
            "processId": None,
            "rootUri": root_uri,
            "rootPath": self.root,
            "capabilities": CLIENT_CAPABILITIES,
            "initializationOptions": init_options or {},
            "workspaceFolders": [{"uri": root_uri, "name": Path(self.root).name}],
        }
        try:
            result = await self.transport.send_request(
                "initialize", params, timeout=self._settings.initialize_timeout
            )
            if isinstance(result, dict):
                self.capabilities = result.get("capabilities") or {}
            else:
                self.capabilities = {}
            await self.transport.send_notification("initialized", {})
        except LspError:
            await self.shutdown()
            raise

        if self.closed:
            await self.shutdown()
            raise ConnectionClosedError(f"{self.name}: closed during initialize")
        self._state = ConnectionState.READY
        logger.info("LSP server initialized for %s", self.name)
        return self.capabilities

    async def shutdown(self) -> None:
        """Best-effort ``shutdown`` + ``exit``, then terminate the process.

        Errors are logged and swallowed; calling this twice is harmless.
        """
        if not self.transport.closed:
            logger.info("Stopping LSP server %s", self.name)
            try:
                await self.transport.send_request(
                    "shutdown", timeout=self._settings.shutdown_timeout
                )
            except LspError as exc:
                logger.debug("%s: shutdown request failed: %s", self.name, exc)
            try:
                await self.transport.send_notification("exit")
            except LspError:
                logger.debug("%s: exit notification failed", self.name)

        await self.transport.aclose("shutdown")
        try:
            await terminate_process(self.process, timeout=self._settings.shutdown_timeout)
        except ProcessLookupError:
            pass

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in self._tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("%s: background task %s failed", self.name, task.get_name())
        self._tasks.clear()

    def _on_transport_closed(self, reason: str) -> None:
        self._state = ConnectionState.CLOSED
        self._close_reason = reason
        self.documents.clear()
        self.diagnostics_cache.clear()

    async def _watch_process(self) -> None:
        code = await self.process.wait()
        if not self.transport.closed:
            logger.warning("LSP server %s exited unexpectedly (code %s)", self.name, code)
            self.transport.close(f"server exited with code {code}")

    async def _read_stderr(self) -> None:
        # read() rather than readline(): a line longer than the stream limit
        # must not stop the pipe from being drained
        pending = b""
        while True:
            chunk = await self.process.stderr.read(_STDERR_CHUNK)
            if not chunk:
                if pending:
                    self._record_stderr(pending)
                return
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                self._record_stderr(line)
            if len(pending) > _STDERR_LINE_LIMIT:
                self._record_stderr(pending)
                pending = b""

    def _record_stderr(self, line: bytes) -> None:
        text = line[:_STDERR_LINE_LIMIT].decode("utf-8", errors="replace").rstrip()
        self.stderr.append(text)
        server_logger.debug("[%s] %s", self.name, text)

    def _require_ready(self) -> None:
        if self._state is ConnectionState.CLOSED:
            raise ConnectionClosedError(
                f"{self.name} is closed: {self._close_reason}",
                details={"server": self.server_id, "root": self.root},
            )
        if self._state is not ConnectionState.READY:
            raise ConnectionStateError(
                f"{self.name} is not ready (state: {self._state.value})",
                details={"server": self.server_id, "state": self._state.value},
            )

    # ------------------------------------------------------------------
    # Server-pushed messages
    # ------------------------------------------------------------------

    def _on_publish_diagnostics(self, params: Any) -> None:
        if not isinstance(params, dict) or "uri" not in params:
            logger.debug("%s: malformed publishDiagnostics", self.name)
            return
        self.diagnostics_cache.publish(
            uri_to_path(params["uri"]), params.get("diagnostics") or []
        )

    def _on_log_message(self, params: Any) -> None:
        if not isinstance(params, dict):
            return
        level = _MESSAGE_LEVELS.get(params.get("type", 4), logging.DEBUG)
        server_logger.log(level, "[%s] %s", self.name, params.get("message", ""))

    def _on_configuration(self, params: Any) -> list[Any]:
        items = params.get("items", []) if isinstance(params, dict) else []
        return [None] * len(items)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Send a request through the transport; only allowed when ready."""
        self._require_ready()
        return await self.transport.send_request(
            method, params, timeout=timeout, cancel=cancel
        )

    async def notify(self, method: str, params: Any = None) -> None:
        self._require_ready()
        await self.transport.send_notification(method, params)

    async def _advisory(
        self,
        method: str,
        params: dict[str, Any],
        cancel: asyncio.Event | None = None,
    ) -> Any:
        try:
            return await self.request(method, params, cancel=cancel)
        except LspError as exc:
            logger.debug("%s: %s failed: %s", self.name, method, exc)
            return None

    @staticmethod
    def _position_params(path: str, line: int, character: int) -> dict[str, Any]:
        return {
            "textDocument": {"uri": file_to_uri(path)},
            "position": {"line": line, "character": character},
        }

    async def hover(
        self, path: str, line: int, character: int, cancel: asyncio.Event | None = None
    ) -> dict[str, Any] | None:
        """Hover information at a 0-based position, or ``None``."""
        return await self._advisory(
            "textDocument/hover", self._position_params(path, line, character), cancel
        )

    async def definition(
        self, path: str, line: int, character: int, cancel: asyncio.Event | None = None
    ) -> list[dict[str, Any]]:
        """Definition locations for the symbol at a position."""
        result = await self._advisory(
            "textDocument/definition", self._position_params(path, line, character), cancel
        )
        return normalize_locations(result)

    async def references(
        self,
        path: str,
        line: int,
        character: int,
        include_declaration: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> list[dict[str, Any]]:
        """All references to the symbol at a position."""
        params = self._position_params(path, line, character)
        params["context"] = {"includeDeclaration": include_declaration}
        result = await self._advisory("textDocument/references", params, cancel)
        return normalize_locations(result)

    async def document_symbols(
        self, path: str, cancel: asyncio.Event | None = None
    ) -> list[dict[str, Any]]:
        result = await self._advisory(
            "textDocument/documentSymbol",
            {"textDocument": {"uri": file_to_uri(path)}},
            cancel,
        )
        return normalize_symbols(result)

    async def signature_help(
        self, path: str, line: int, character: int, cancel: asyncio.Event | None = None
    ) -> dict[str, Any] | None:
        return await self._advisory(
            "textDocument/signatureHelp", self._position_params(path, line, character), cancel
        )

    async def rename(
        self,
        path: str,
        line: int,
        character: int,
        new_name: str,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any] | None:
        """The server's ``WorkspaceEdit`` for renaming a symbol, or ``None``."""
        params = self._position_params(path, line, character)
        params["newName"] = new_name
        return await self._advisory("textDocument/rename", params, cancel)

    async def code_action(
        self,
        path: str,
        start_line: int,
        start_character: int,
        end_line: int | None = None,
        end_character: int | None = None,
        only: list[str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[dict[str, Any]]:
        """Code actions for a range; cached diagnostics on those lines are sent as context."""
        code_range: Range = {
            "start": {"line": start_line, "character": start_character},
            "end": {
                "line": start_line if end_line is None else end_line,
                "character": start_character if end_character is None else end_character,
            },
        }
        key = normalize_path(path)
        overlapping = [
            d
            for d in self.diagnostics_cache.get(key)
            if "range" in d and ranges_overlap(d["range"], code_range)
        ]
        context: dict[str, Any] = {"diagnostics": overlapping}
        if only is not None:
            context["only"] = only
        result = await self._advisory(
            "textDocument/codeAction",
            {
                "textDocument": {"uri": file_to_uri(path)},
                "range": code_range,
                "context": context,
            },
            cancel,
        )
        return result if isinstance(result, list) else []

    async def workspace_symbols(
        self, query: str, cancel: asyncio.Event | None = None
    ) -> list[dict[str, Any]]:
        result = await self._advisory("workspace/symbol", {"query": query}, cancel)
        return result if isinstance(result, list) else []

    async def diagnostics(self, path: str) -> list[Diagnostic]:
        """Pull diagnostics with ``textDocument/diagnostic``.

        Many servers only push diagnostics, so any failure yields ``[]``.
        """
        result = await self._advisory(
            "textDocument/diagnostic", {"textDocument": {"uri": file_to_uri(path)}}
        )
        if isinstance(result, list):
            return result
        if isinstance(result, dict) and isinstance(result.get("items"), list):
            return result["items"]
        return []

    # ------------------------------------------------------------------
    # Pushed diagnostics
    # ------------------------------------------------------------------

    def cached_diagnostics(self, path: str) -> list[Diagnostic]:
        """The most recent diagnostics the server published for *path*."""
        return self.diagnostics_cache.get(normalize_path(path))

    def subscribe(self, path: str, listener: Listener) -> Subscription:
        """Call *listener* each time diagnostics for *path* are published."""
        return self.diagnostics_cache.subscribe(normalize_path(path), listener)

    async def wait_for_diagnostics(self, path: str, timeout: float | None = None) -> bool:
        if timeout is None:
            timeout = self._settings.diagnostics_timeout
        return await self.diagnostics_cache.wait_for(normalize_path(path), timeout)

    # ------------------------------------------------------------------
    # Document synchronization
    # ------------------------------------------------------------------

    async def open(self, path: str, language_id: str, content: str) -> None:
        self._require_ready()
        await self.documents.open(normalize_path(path), language_id, content)

    async def change(
        self,
        path: str,
        content: str,
        range: Range | None = None,
        new_text: str | None = None,
    ) -> int:
        self._require_ready()
        return await self.documents.change(normalize_path(path), content, range, new_text)

    async def close(self, path: str) -> None:
        self._require_ready()
        await self.documents.close(normalize_path(path))

    async def save(self, path: str, text: str | None = None) -> None:
        self._require_ready()
        await self.documents.save(normalize_path(path), text)

    def is_open(self, path: str) -> bool:
        return self.documents.is_open(normalize_path(path))
