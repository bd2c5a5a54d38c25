"""Message framing strategies for JSON-RPC over a byte stream.

Two schemes are supported:

- ``newline``: one JSON object per ``\\n``-terminated line. This is the
  default and only works with servers that cooperate with it.
- ``content-length``: the ``Content-Length: N\\r\\n\\r\\n`` header framing
  used by most language servers.

Decoders are stateful (they buffer partial messages), so every transport
gets its own instance from :func:`create_framing`.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from lspmux.errors import ConfigurationError

logger = logging.getLogger("lspmux.framing")


class MessageFraming(ABC):
    """Encodes outgoing messages and splits an incoming byte stream."""

    name: str = ""

    @abstractmethod
    def encode(self, message: dict[str, Any]) -> bytes:
        """Serialize one JSON-RPC message for writing."""

    @abstractmethod
    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return every message completed by it.

        Incomplete trailing data stays buffered until the next call.
        """

    @property
    @abstractmethod
    def pending_bytes(self) -> int:
        """Number of buffered bytes that do not yet form a message."""


def _decode_object(body: bytes) -> dict[str, Any] | None:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(message, dict):
        return None
    return message


class NewlineFraming(MessageFraming):
    """Newline-delimited JSON."""

    name = "newline"

    def __init__(self) -> None:
        self._buffer = bytearray()

    def encode(self, message: dict[str, Any]) -> bytes:
        # json.dumps escapes embedded newlines, so one message is one line
        return json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer.extend(chunk)
        messages: list[dict[str, Any]] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline]).strip()
            del self._buffer[: newline + 1]
            if not line:
                continue
            message = _decode_object(line)
            if message is None:
                logger.debug("Discarding non-JSON line: %.200r", line)
                continue
            messages.append(message)
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


class ContentLengthFraming(MessageFraming):
    """``Content-Length`` header framing."""

    name = "content-length"

    _SEPARATOR = b"\r\n\r\n"

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._content_length: int | None = None

    def encode(self, message: dict[str, Any]) -> bytes:
        payload = json.dumps(message).encode("utf-8")
        header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
        return header + payload

    def _parse_headers(self, raw: bytes) -> int | None:
        headers: dict[str, str] = {}
        for line in raw.decode("ascii", errors="replace").split("\r\n"):
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        length = headers.get("content-length")
        if length is None:
            logger.warning("Missing Content-Length header, skipping")
            return None
        try:
            value = int(length)
        except ValueError:
            value = -1
        if value < 0:
            logger.warning("Invalid Content-Length: %s", length)
            return None
        return value

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer.extend(chunk)
        messages: list[dict[str, Any]] = []
        while True:
            if self._content_length is None:
                end = self._buffer.find(self._SEPARATOR)
                if end < 0:
                    break
                raw_headers = bytes(self._buffer[:end])
                del self._buffer[: end + len(self._SEPARATOR)]
                self._content_length = self._parse_headers(raw_headers)
                if self._content_length is None:
                    continue

            if len(self._buffer) < self._content_length:
                break
            body = bytes(self._buffer[: self._content_length])
            del self._buffer[: self._content_length]
            self._content_length = None

            message = _decode_object(body)
            if message is None:
                logger.warning("Invalid JSON from LSP server")
                continue
            messages.append(message)
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


FRAMINGS: dict[str, type[MessageFraming]] = {
    NewlineFraming.name: NewlineFraming,
    ContentLengthFraming.name: ContentLengthFraming,
}


def create_framing(name: str = "newline") -> MessageFraming:
    """Return a fresh framing instance by name.

    Raises:
        ConfigurationError: If *name* is not a known framing.
    """
    try:
        return FRAMINGS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown framing {name!r}; expected one of {sorted(FRAMINGS)}"
        ) from None
