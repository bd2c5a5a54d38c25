"""Document synchronization state for one connection.

Tracks which documents the server has been told about and their versions,
and sends the matching ``textDocument/did*`` notifications. Sending a
change, close or save for a document that is not open is a programming
error and raises :class:`DocumentStateError` before anything is written.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from lspmux.config import EvictionPolicy
from lspmux.errors import DocumentStateError
from lspmux.paths import file_to_uri
from lspmux.transport import JsonRpcTransport

logger = logging.getLogger("lspmux.documents")

INITIAL_VERSION = 1

Range = dict[str, dict[str, int]]


@dataclass
class OpenFile:
    """Open-document state for one path."""

    version: int = INITIAL_VERSION
    last_access: float = field(default_factory=time.monotonic)


class DocumentSync:
    """Open/change/close/save bookkeeping for one transport."""

    def __init__(self, transport: JsonRpcTransport) -> None:
        self._transport = transport
        self._open_files: dict[str, OpenFile] = {}

    def is_open(self, path: str) -> bool:
        return path in self._open_files

    def get(self, path: str) -> OpenFile | None:
        return self._open_files.get(path)

    def version(self, path: str) -> int:
        """Current version of an open document."""
        return self._require(path, "read version of").version

    def open_paths(self) -> list[str]:
        return list(self._open_files)

    def __len__(self) -> int:
        return len(self._open_files)

    def touch(self, path: str) -> None:
        """Refresh the last-access time of an open document."""
        entry = self._open_files.get(path)
        if entry is not None:
            entry.last_access = time.monotonic()

    def _require(self, path: str, action: str) -> OpenFile:
        entry = self._open_files.get(path)
        if entry is None:
            raise DocumentStateError(
                f"Cannot {action} {path}: document is not open",
                details={"path": path},
            )
        return entry

    async def open(self, path: str, language_id: str, content: str) -> None:
        """Send ``didOpen`` with version 1 and start tracking *path*."""
        if path in self._open_files:
            raise DocumentStateError(
                f"Cannot open {path}: document is already open",
                details={"path": path},
            )
        # Registered before the await so a second open of this path fails
        entry = self._open_files[path] = OpenFile()
        try:
            await self._transport.send_notification(
                "textDocument/didOpen",
                {
                    "textDocument": {
                        "uri": file_to_uri(path),
                        "languageId": language_id,
                        "version": INITIAL_VERSION,
                        "text": content,
                    }
                },
            )
        except Exception:
            if self._open_files.get(path) is entry:
                del self._open_files[path]
            raise

    async def change(
        self,
        path: str,
        content: str,
        range: Range | None = None,
        new_text: str | None = None,
    ) -> int:
        """Send ``didChange`` and bump the version.

        A full-document change is sent unless both *range* and *new_text* are
        given, in which case an incremental change replaces *range*.

        Returns:
            The new document version.
        """
        entry = self._require(path, "change")
        version = entry.version + 1
        if range is not None and new_text is not None:
            changes: list[dict[str, Any]] = [{"range": range, "text": new_text}]
        else:
            changes = [{"text": content}]
        # Bumped before sending so concurrent changes get distinct versions
        entry.version = version
        entry.last_access = time.monotonic()
        try:
            await self._transport.send_notification(
                "textDocument/didChange",
                {
                    "textDocument": {"uri": file_to_uri(path), "version": version},
                    "contentChanges": changes,
                },
            )
        except Exception:
            if entry.version == version:
                entry.version = version - 1
            raise
        return version

    async def close(self, path: str) -> None:
        """Send ``didClose`` and stop tracking *path*."""
        entry = self._require(path, "close")
        del self._open_files[path]
        try:
            await self._transport.send_notification(
                "textDocument/didClose",
                {"textDocument": {"uri": file_to_uri(path)}},
            )
        except Exception:
            if not self._transport.closed:
                self._open_files.setdefault(path, entry)
            raise

    async def save(self, path: str, text: str | None = None) -> None:
        """Send ``didSave``; version and open state are unchanged."""
        entry = self._require(path, "save")
        params: dict[str, Any] = {"textDocument": {"uri": file_to_uri(path)}}
        if text is not None:
            params["text"] = text
        await self._transport.send_notification("textDocument/didSave", params)
        entry.last_access = time.monotonic()

    async def evict(self, policy: EvictionPolicy, now: float | None = None) -> list[str]:
        """Close documents that exceed the idle time or the open-file limit.

        Returns:
            The paths that were closed, oldest first.
        """
        if not policy.enabled or not self._open_files:
            return []
        if now is None:
            now = time.monotonic()

        by_age = sorted(self._open_files.items(), key=lambda item: item[1].last_access)
        victims: list[str] = []
        if policy.idle_timeout is not None:
            victims.extend(
                path for path, entry in by_age if now - entry.last_access > policy.idle_timeout
            )
        if policy.max_open_files is not None:
            remaining = [path for path, _ in by_age if path not in victims]
            excess = len(remaining) - policy.max_open_files
            if excess > 0:
                victims.extend(remaining[:excess])

        for path in victims:
            await self.close(path)
        if victims:
            logger.debug("Evicted %d open documents", len(victims))
        return victims

    def clear(self) -> None:
        """Forget every open document without notifying the server."""
        self._open_files.clear()
