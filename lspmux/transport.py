"""JSON-RPC transport with id-based response correlation.

One transport owns the read and write side of one server's stdio. A single
reader task decodes every inbound message and dispatches it: responses are
routed to the pending request with the same id, notifications and
server-initiated requests go to handlers registered by method name.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol

from lspmux.errors import (
    ConnectionClosedError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
)
from lspmux.framing import MessageFraming, NewlineFraming

logger = logging.getLogger("lspmux.transport")

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

NotificationHandler = Callable[[Any], None]
RequestHandler = Callable[[Any], Any]
CloseCallback = Callable[[str], None]


class StreamWriterLike(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


class JsonRpcTransport:
    """Demultiplexes one byte stream into concurrent JSON-RPC conversations."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: StreamWriterLike,
        framing: MessageFraming | None = None,
        *,
        name: str = "lsp",
        default_timeout: float | None = None,
        read_size: int = 65536,
    ) -> None:
        """Wrap a reader/writer pair without starting the reader loop.

        Args:
            reader: Stream carrying the server's output.
            writer: Stream carrying our messages to the server.
            framing: Framing strategy; newline-delimited JSON by default.
            name: Label used in log messages.
            default_timeout: Request timeout used when a call passes none.
            read_size: Maximum bytes read per chunk.
        """
        self._reader = reader
        self._writer = writer
        self._framing = framing or NewlineFraming()
        self._name = name
        self._default_timeout = default_timeout
        self._read_size = read_size

        self._next_id: int = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed: bool = False
        self._close_reason: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        return len(self._pending)

    @property
    def framing(self) -> MessageFraming:
        return self._framing

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Route notifications for *method* to *handler* (called with params)."""
        self._notification_handlers[method] = handler

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Answer server-initiated *method* requests with *handler*'s return value.

        The handler may be a plain function or a coroutine function.
        """
        self._request_handlers[method] = handler

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Call *callback(reason)* once when the transport closes."""
        if self._closed:
            callback(self._close_reason or "closed")
            return
        self._close_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the inbound dispatch loop."""
        if self._reader_task is not None:
            return
        if self._closed:
            raise ConnectionClosedError(f"{self._name}: transport already closed")
        self._reader_task = asyncio.create_task(
            self._reader_loop(), name=f"{self._name}-reader"
        )

    def close(self, reason: str = "connection closed") -> None:
        """Mark the transport closed and reject every pending request.

        Safe to call more than once; only the first call has an effect.
        """
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        logger.debug("%s: transport closed (%s)", self._name, reason)

        pending = list(self._pending.items())
        self._pending.clear()
        for request_id, future in pending:
            if not future.done():
                future.set_exception(
                    ConnectionClosedError(
                        f"Connection closed: {reason}",
                        details={"request_id": request_id},
                    )
                )

        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("%s: close callback failed", self._name)

    async def aclose(self, reason: str = "connection closed") -> None:
        """Close, wait for the reader loop to finish and close the writer."""
        self.close(reason)
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        try:
            self._writer.close()
        except (OSError, RuntimeError) as exc:
            logger.debug("%s: closing writer failed: %s", self._name, exc)
        for task in list(self._background):
            task.cancel()

    # ------------------------------------------------------------------
    # Outgoing messages
    # ------------------------------------------------------------------

    async def _write(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError(
                f"Connection closed: {self._close_reason}",
                details={"method": message.get("method")},
            )
        data = self._framing.encode(message)
        try:
            # write() is synchronous, so messages reach the stream in call order
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self.close(f"write failed: {exc}")
            raise ConnectionClosedError(f"Connection closed: {exc}") from exc

    async def send_request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Send a request and wait for the response carrying the same id.

        Args:
            method: The LSP method name (e.g. ``textDocument/definition``).
            params: Optional parameters.
            timeout: Seconds to wait; falls back to the transport default.
                ``None`` for both waits until a response or close.
            cancel: Event that, once set, abandons the request.

        Returns:
            The ``result`` field of the response.

        Raises:
            ConnectionClosedError: If the transport is or becomes closed.
            RequestTimeoutError: If no response arrives within *timeout*.
            RequestCancelledError: If *cancel* is set first.
            ProtocolError: If the server answers with a JSON-RPC error.
        """
        if timeout is None:
            timeout = self._default_timeout
        if cancel is not None and cancel.is_set():
            raise RequestCancelledError(f"{method} cancelled before sending")

        request_id = self._next_id
        self._next_id += 1

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._write(message)
            if cancel is None:
                return await asyncio.wait_for(future, timeout=timeout)
            return await self._wait_cancellable(future, timeout, cancel)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            logger.warning(
                "%s: request %s (id=%d) timed out", self._name, method, request_id
            )
            await self._cancel_remote(request_id)
            raise RequestTimeoutError(
                f"{method} timed out after {timeout}s",
                details={"method": method, "request_id": request_id},
            ) from None
        except RequestCancelledError:
            self._pending.pop(request_id, None)
            await self._cancel_remote(request_id)
            raise
        except BaseException:
            self._pending.pop(request_id, None)
            if not future.done():
                future.cancel()
            raise

    async def _wait_cancellable(
        self,
        future: asyncio.Future[Any],
        timeout: float | None,
        cancel: asyncio.Event,
    ) -> Any:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {future, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
        if future in done:
            return future.result()
        if cancel.is_set():
            raise RequestCancelledError("Request cancelled by caller")
        raise asyncio.TimeoutError

    async def _cancel_remote(self, request_id: int) -> None:
        if self._closed:
            return
        try:
            await self.send_notification("$/cancelRequest", {"id": request_id})
        except ConnectionClosedError:
            logger.debug("%s: could not send $/cancelRequest", self._name)

    async def send_notification(self, method: str, params: Any = None) -> None:
        """Send a notification (no response expected)."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def send_response(self, request_id: int | str, result: Any) -> None:
        """Answer a server-initiated request."""
        await self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def send_error(
        self,
        request_id: int | str | None,
        code: int,
        message: str,
        data: Any = None,
    ) -> None:
        """Answer a server-initiated request with a JSON-RPC error."""
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        await self._write({"jsonrpc": "2.0", "id": request_id, "error": error})

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    async def _reader_loop(self) -> None:
        """Continuously read chunks and dispatch decoded messages."""
        reason = "server closed its output"
        try:
            while not self._closed:
                chunk = await self._reader.read(self._read_size)
                if not chunk:
                    break
                for message in self._framing.feed(chunk):
                    self._dispatch(message)
        except asyncio.CancelledError:
            reason = "reader cancelled"
            return
        except Exception as exc:
            logger.error("%s: reader loop crashed: %s", self._name, exc, exc_info=True)
            reason = f"reader failed: {exc}"
        finally:
            self.close(reason)

    def _dispatch(self, message: dict[str, Any]) -> None:
        """Route an incoming JSON-RPC message to the right handler."""
        method = message.get("method")
        if method is None:
            if "id" in message:
                self._handle_response(message)
            else:
                logger.debug("%s: discarding message without id or method", self._name)
            return

        if message.get("id") is not None:
            self._handle_server_request(method, message["id"], message.get("params"))
        else:
            self._handle_notification(method, message.get("params"))

    def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        future = self._pending.pop(request_id, None)
        if future is None and isinstance(request_id, str) and request_id.isdigit():
            future = self._pending.pop(int(request_id), None)
        if future is None:
            if request_id is None and "error" in message:
                logger.warning(
                    "%s: server reported an error: %s", self._name, message["error"]
                )
            else:
                logger.debug("%s: no pending request for id=%s", self._name, request_id)
            return
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(
                ProtocolError(error.get("code"), error.get("message", ""), error.get("data"))
            )
        else:
            future.set_result(message.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("%s: unhandled notification %s", self._name, method)
            return
        try:
            handler(params)
        except Exception:
            logger.exception("%s: handler for %s failed", self._name, method)

    def _handle_server_request(self, method: str, request_id: Any, params: Any) -> None:
        handler = self._request_handlers.get(method)
        if handler is None:
            logger.debug(
                "%s: rejecting server request %s (id=%s)", self._name, method, request_id
            )
            self._spawn(
                self.send_error(request_id, METHOD_NOT_FOUND, f"Method not supported: {method}")
            )
            return
        self._spawn(self._answer(method, request_id, handler, params))

    async def _answer(
        self,
        method: str,
        request_id: Any,
        handler: RequestHandler,
        params: Any,
    ) -> None:
        try:
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.exception("%s: handler for server request %s failed", self._name, method)
            await self.send_error(request_id, INTERNAL_ERROR, str(exc))
            return
        await self.send_response(request_id, result)

    def _spawn(self, coro: Awaitable[None]) -> None:
        async def runner() -> None:
            try:
                await coro
            except ConnectionClosedError:
                logger.debug("%s: reply dropped, connection closed", self._name)

        task = asyncio.ensure_future(runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
