"""Server registry: one connection per (server, project root).

Servers are started lazily the first time a file they handle is touched.
Concurrent callers resolving to the same root share one start attempt, so
a root never gets two processes. A server that cannot be started makes the
file "unavailable" (``None``) instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from lspmux.client import LspConnection
from lspmux.config import LspSettings, load_settings
from lspmux.diagnostics import Diagnostic, Listener, Subscription
from lspmux.documents import Range
from lspmux.errors import DocumentStateError, LspError, ServerUnavailableError
from lspmux.paths import normalize_path
from lspmux.servers import LSP_SERVERS, ServerConfig

logger = logging.getLogger("lspmux.manager")

ConnectionKey = tuple[str, str]


@dataclass
class FileDiagnostics:
    """Diagnostics outcome for one file in a batch."""

    file: str
    status: Literal["ok", "timeout", "error", "unsupported"]
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: str | None = None


class ServerRegistry:
    """Maps files to live language server connections.

    Lazy startup: servers are only started when a caller first needs one
    for a given project root.
    """

    _instance: ClassVar[ServerRegistry | None] = None

    def __init__(
        self,
        cwd: str,
        servers: list[ServerConfig] | None = None,
        settings: LspSettings | None = None,
    ) -> None:
        self._cwd = os.path.abspath(cwd)
        self._servers = list(LSP_SERVERS if servers is None else servers)
        self._settings = settings or load_settings()
        self._connections: dict[ConnectionKey, LspConnection] = {}
        # Guards concurrent start attempts for the same (server, root)
        self._start_locks: dict[ConnectionKey, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Singleton access
    # ------------------------------------------------------------------

    @classmethod
    def get_instance(cls, cwd: str | None = None) -> ServerRegistry:
        """Return the process-wide registry.

        On first call ``cwd`` must be provided. Subsequent calls may omit it;
        passing a different ``cwd`` replaces the instance (the old one should
        be shut down by the caller).
        """
        if cwd is not None and cls._instance is not None:
            if cls._instance.cwd != os.path.abspath(cwd):
                cls._instance = None
        if cls._instance is None:
            if cwd is None:
                raise ValueError("cwd is required on first call to get_instance")
            cls._instance = cls(cwd)
            logger.info("ServerRegistry created for %s", cwd)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton (primarily for testing)."""
        cls._instance = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def cwd(self) -> str:
        return self._cwd

    @property
    def settings(self) -> LspSettings:
        return self._settings

    def connections(self) -> list[LspConnection]:
        """All registered connections that are still open."""
        return [c for c in self._connections.values() if not c.closed]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, file_path: str) -> str:
        """Absolute, normalized form of *file_path* relative to the cwd."""
        return normalize_path(file_path, self._cwd)

    def server_for_file(self, file_path: str) -> ServerConfig | None:
        for config in self._servers:
            if config.id in self._settings.disabled_servers:
                continue
            if config.handles(file_path):
                return config
        return None

    def resolve_root(self, file_path: str) -> tuple[ServerConfig, str] | None:
        """Find the server config and project root for a file.

        Returns:
            ``(config, root)`` or ``None`` when no server claims the file or
            its root is unknown; the caller must not spawn a server then.
        """
        abs_path = self.resolve(file_path)
        config = self.server_for_file(abs_path)
        if config is None:
            return None
        root = config.find_root(abs_path, self._cwd)
        if root is None:
            logger.debug("No project root for %s (%s)", abs_path, config.id)
            return None
        return config, os.path.abspath(root)

    def language_id(self, file_path: str) -> str:
        config = self.server_for_file(file_path)
        return config.language_id(file_path) if config else "plaintext"

    def explain_unavailable(self, file_path: str) -> str:
        """Human-readable reason why a file has no server."""
        config = self.server_for_file(file_path)
        if config is None:
            ext = os.path.splitext(file_path)[1] or "files without an extension"
            return f"No LSP for {ext}"
        return f"LSP server {config.id} is not available for {file_path}"

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    async def connection_for_file(self, file_path: str) -> LspConnection | None:
        """Return (starting it if needed) the connection for a file.

        Returns:
            The ready ``LspConnection`` or ``None`` if no server is available.
        """
        resolved = self.resolve_root(file_path)
        if resolved is None:
            return None
        config, root = resolved
        key: ConnectionKey = (config.id, root)

        # Fast path: server already running
        connection = self._connections.get(key)
        if connection is not None and connection.is_ready:
            return connection

        # Slow path: start server (guarded by lock to avoid double-start)
        lock = self._start_locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Re-check after acquiring the lock
            connection = self._connections.get(key)
            if connection is not None and connection.is_ready:
                return connection
            if connection is not None:
                self._connections.pop(key, None)
                logger.info(
                    "Restarting LSP server %s (%s)", connection.name, connection.close_reason
                )
                await connection.shutdown()

            connection = await self._start(config, root)
            if connection is not None:
                self._connections[key] = connection
            return connection

    async def require_connection(self, file_path: str) -> LspConnection:
        """Like :meth:`connection_for_file` but raises when unavailable."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            raise ServerUnavailableError(
                self.explain_unavailable(file_path), details={"file": file_path}
            )
        return connection

    async def _start(self, config: ServerConfig, root: str) -> LspConnection | None:
        try:
            spawned = await config.spawn(root, self._settings)
        except (OSError, LspError) as exc:
            logger.warning("Failed to spawn LSP server %s: %s", config.id, exc)
            return None
        if spawned is None:
            logger.warning("LSP server %s not available for %s", config.id, root)
            return None

        framing = self._settings.framing.get(config.id, config.framing)
        try:
            connection = LspConnection(
                config.id,
                root,
                spawned.process,
                framing=framing,
                settings=self._settings,
            )
        except LspError as exc:
            logger.error("Invalid configuration for %s: %s", config.id, exc)
            spawned.process.kill()
            return None

        try:
            await connection.initialize(spawned.init_options or config.init_options)
        except LspError as exc:
            logger.error(
                "Failed to initialize LSP server %s: %s", config.id, exc, exc_info=True
            )
            return None

        logger.info("LSP server %s is now running for %s", config.id, root)
        return connection

    async def shutdown(self, connection: LspConnection) -> None:
        """Gracefully stop one connection and forget it. Errors are swallowed."""
        for key, registered in list(self._connections.items()):
            if registered is connection:
                del self._connections[key]
                self._drop_start_lock(key)
        try:
            await connection.shutdown()
        except Exception as exc:
            logger.warning("Error shutting down %s: %s", connection.name, exc)

    async def shutdown_all(self) -> None:
        """Shutdown all running LSP servers."""
        connections = list(self._connections.values())
        for key in list(self._connections):
            self._drop_start_lock(key)
        self._connections.clear()
        logger.info("Stopping all LSP servers (%d active)", len(connections))
        if connections:
            await asyncio.gather(
                *(c.shutdown() for c in connections), return_exceptions=True
            )
        logger.info("All LSP servers stopped")

    def _drop_start_lock(self, key: ConnectionKey) -> None:
        # A held lock still has a start attempt waiting on it
        lock = self._start_locks.get(key)
        if lock is not None and not lock.locked():
            del self._start_locks[key]

    async def sweep_idle(self) -> list[str]:
        """Apply the configured eviction policy to every connection.

        Does nothing unless ``idle_file_timeout`` or ``max_open_files`` is set.

        Returns:
            The paths whose documents were closed.
        """
        policy = self._settings.eviction
        if not policy.enabled:
            return []
        evicted: list[str] = []
        for connection in self.connections():
            try:
                evicted.extend(await connection.documents.evict(policy))
            except LspError as exc:
                logger.debug("Eviction failed on %s: %s", connection.name, exc)
        return evicted

    # ------------------------------------------------------------------
    # Document synchronization
    # ------------------------------------------------------------------

    async def open(
        self, file_path: str, content: str, language_id: str | None = None
    ) -> LspConnection | None:
        """Open a document on its server; ``None`` if the file has no server."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return None
        abs_path = self.resolve(file_path)
        await connection.open(abs_path, language_id or self.language_id(abs_path), content)
        return connection

    async def change(
        self,
        file_path: str,
        content: str,
        range: Range | None = None,
        new_text: str | None = None,
    ) -> int:
        connection = self._running_connection(file_path, "change")
        return await connection.change(self.resolve(file_path), content, range, new_text)

    async def close(self, file_path: str) -> None:
        connection = self._running_connection(file_path, "close")
        await connection.close(self.resolve(file_path))

    async def save(self, file_path: str, text: str | None = None) -> None:
        connection = self._running_connection(file_path, "save")
        await connection.save(self.resolve(file_path), text)

    def _running_connection(self, file_path: str, action: str) -> LspConnection:
        """The registered connection for a file, without starting a server.

        A connection that has since closed is returned as is so the document
        operation reports it.
        """
        resolved = self.resolve_root(file_path)
        if resolved is None:
            raise ServerUnavailableError(
                self.explain_unavailable(file_path), details={"file": file_path}
            )
        config, root = resolved
        connection = self._connections.get((config.id, root))
        if connection is None:
            abs_path = self.resolve(file_path)
            raise DocumentStateError(
                f"Cannot {action} {abs_path}: document is not open",
                details={"path": abs_path, "server": config.id},
            )
        return connection

    async def sync_file(
        self, file_path: str, content: str | None = None
    ) -> LspConnection | None:
        """Open the file, or send its full content as a change if already open.

        Reads the file from disk when *content* is ``None``.
        """
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return None
        abs_path = self.resolve(file_path)
        if content is None:
            content = self._read_file(abs_path)
        if connection.is_open(abs_path):
            await connection.change(abs_path, content)
        else:
            await connection.open(abs_path, self.language_id(abs_path), content)
        return connection

    async def _ensure_open(self, file_path: str) -> tuple[LspConnection, str] | None:
        """Connection for a file, opened from disk if the server has not seen it."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return None
        abs_path = self.resolve(file_path)
        if connection.is_open(abs_path):
            connection.documents.touch(abs_path)
            return connection, abs_path
        try:
            content = self._read_file(abs_path)
        except OSError as exc:
            logger.debug("Could not read %s: %s", abs_path, exc)
            return None
        try:
            await connection.open(abs_path, self.language_id(abs_path), content)
        except LspError as exc:
            logger.debug("Could not open %s: %s", abs_path, exc)
            return None
        return connection, abs_path

    @staticmethod
    def _read_file(abs_path: str) -> str:
        with open(abs_path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    # ------------------------------------------------------------------
    # Code intelligence proxies
    # ------------------------------------------------------------------

    async def hover(self, file_path: str, line: int, character: int) -> dict[str, Any] | None:
        """Hover information at a 0-based position."""
        opened = await self._ensure_open(file_path)
        if opened is None:
            return None
        connection, abs_path = opened
        return await connection.hover(abs_path, line, character)

    async def definition(self, file_path: str, line: int, character: int) -> list[dict[str, Any]]:
        """Go-to-definition for a symbol at the given position."""
        opened = await self._ensure_open(file_path)
        if opened is None:
            return []
        connection, abs_path = opened
        return await connection.definition(abs_path, line, character)

    async def references(self, file_path: str, line: int, character: int) -> list[dict[str, Any]]:
        """Find all references for a symbol at the given position."""
        opened = await self._ensure_open(file_path)
        if opened is None:
            return []
        connection, abs_path = opened
        return await connection.references(abs_path, line, character)

    async def document_symbols(self, file_path: str) -> list[dict[str, Any]]:
        """List all symbols in a document."""
        opened = await self._ensure_open(file_path)
        if opened is None:
            return []
        connection, abs_path = opened
        return await connection.document_symbols(abs_path)

    async def signature_help(
        self, file_path: str, line: int, character: int
    ) -> dict[str, Any] | None:
        opened = await self._ensure_open(file_path)
        if opened is None:
            return None
        connection, abs_path = opened
        return await connection.signature_help(abs_path, line, character)

    async def rename(
        self, file_path: str, line: int, character: int, new_name: str
    ) -> dict[str, Any] | None:
        opened = await self._ensure_open(file_path)
        if opened is None:
            return None
        connection, abs_path = opened
        return await connection.rename(abs_path, line, character, new_name)

    async def code_action(
        self,
        file_path: str,
        start_line: int,
        start_character: int,
        end_line: int | None = None,
        end_character: int | None = None,
    ) -> list[dict[str, Any]]:
        opened = await self._ensure_open(file_path)
        if opened is None:
            return []
        connection, abs_path = opened
        return await connection.code_action(
            abs_path,
            start_line,
            start_character,
            end_line,
            end_character,
            only=["quickfix", "refactor", "source"],
        )

    async def workspace_symbols(self, query: str) -> list[dict[str, Any]]:
        """Search for symbols across all running LSP servers.

        Queries all active servers and merges results.
        """
        results: list[dict[str, Any]] = []
        for connection in self.connections():
            results.extend(await connection.workspace_symbols(query))
        return results

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def diagnostics(self, file_path: str) -> list[Diagnostic]:
        """Cached pushed diagnostics, falling back to a pull request."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return []
        abs_path = self.resolve(file_path)
        if connection.diagnostics_cache.has(abs_path):
            return connection.cached_diagnostics(abs_path)
        return await connection.diagnostics(abs_path)

    async def subscribe(self, file_path: str, listener: Listener) -> Subscription | None:
        """Subscribe to pushed diagnostics for a file; ``None`` if unavailable."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return None
        return connection.subscribe(self.resolve(file_path), listener)

    async def wait_for_diagnostics(
        self, file_path: str, timeout: float | None = None
    ) -> list[Diagnostic]:
        """Sync the file from disk and wait for fresh pushed diagnostics."""
        connection = await self.connection_for_file(file_path)
        if connection is None:
            return []
        abs_path = self.resolve(file_path)
        connection.diagnostics_cache.discard(abs_path)
        await self.sync_file(abs_path)
        await connection.wait_for_diagnostics(abs_path, timeout)
        return connection.cached_diagnostics(abs_path)

    async def diagnostics_for_files(
        self, files: list[str], timeout: float | None = None
    ) -> list[FileDiagnostics]:
        """Collect diagnostics for several files.

        Files that were not open before are closed again afterwards.
        """
        if timeout is None:
            timeout = self._settings.diagnostics_timeout
        results: list[FileDiagnostics] = []
        to_close: list[tuple[LspConnection, str]] = []

        for abs_path in dict.fromkeys(self.resolve(f) for f in files):
            if not os.path.isfile(abs_path):
                results.append(FileDiagnostics(abs_path, "error", error="File not found"))
                continue

            connection = await self.connection_for_file(abs_path)
            if connection is None:
                results.append(
                    FileDiagnostics(
                        abs_path, "unsupported", error=self.explain_unavailable(abs_path)
                    )
                )
                continue

            try:
                content = self._read_file(abs_path)
            except OSError as exc:
                results.append(FileDiagnostics(abs_path, "error", error=str(exc)))
                continue

            if not connection.is_open(abs_path):
                to_close.append((connection, abs_path))
            connection.diagnostics_cache.discard(abs_path)
            try:
                await self.sync_file(abs_path, content)
            except LspError as exc:
                results.append(FileDiagnostics(abs_path, "error", error=str(exc)))
                continue

            if await connection.wait_for_diagnostics(abs_path, timeout):
                results.append(
                    FileDiagnostics(abs_path, "ok", connection.cached_diagnostics(abs_path))
                )
                continue

            pulled = await connection.diagnostics(abs_path)
            if pulled:
                results.append(FileDiagnostics(abs_path, "ok", pulled))
            else:
                results.append(
                    FileDiagnostics(abs_path, "timeout", error="LSP did not respond")
                )

        for connection, abs_path in to_close:
            if connection.is_ready and connection.is_open(abs_path):
                try:
                    await connection.close(abs_path)
                except LspError as exc:
                    logger.debug("Could not close %s: %s", abs_path, exc)
        return results
