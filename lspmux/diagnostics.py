"""Per-connection diagnostics cache with path subscriptions.

The cache holds the most recent diagnostics a server published for each
absolute path. Publishing replaces the entry and then calls every listener
subscribed to that path. Listeners take no arguments; they read the cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Literal

logger = logging.getLogger("lspmux.diagnostics")

Diagnostic = dict[str, Any]
Listener = Callable[[], None]
SeverityFilter = Literal["all", "error", "warning", "info", "hint"]

# Severity values from the LSP specification
SEVERITY_LABELS: dict[int, str] = {
    1: "error",
    2: "warning",
    3: "info",
    4: "hint",
}

_SEVERITY_THRESHOLDS: dict[str, int] = {
    "error": 1,
    "warning": 2,
    "info": 3,
    "hint": 4,
}


class Subscription:
    """Handle returned by :meth:`DiagnosticsCache.subscribe`."""

    def __init__(self, cache: DiagnosticsCache, path: str, listener: Listener) -> None:
        self._cache = cache
        self.path = path
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop receiving updates. Calling this twice is harmless."""
        if not self._active:
            return
        self._active = False
        self._cache._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class DiagnosticsCache:
    """Latest diagnostics per path, plus change listeners."""

    def __init__(self) -> None:
        self._entries: dict[str, list[Diagnostic]] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def has(self, path: str) -> bool:
        return path in self._entries

    def get(self, path: str) -> list[Diagnostic]:
        """Return the cached diagnostics for *path* (empty when none)."""
        return list(self._entries.get(path, []))

    def paths(self) -> list[str]:
        return list(self._entries)

    def publish(self, path: str, diagnostics: Iterable[Diagnostic]) -> None:
        """Replace the entry for *path* and notify its listeners."""
        self._entries[path] = list(diagnostics)
        logger.debug("Received %d diagnostics for %s", len(self._entries[path]), path)
        for subscription in list(self._subscriptions.get(path, [])):
            if not subscription.active:
                continue
            try:
                subscription.listener()
            except Exception:
                logger.exception("Diagnostics listener for %s failed", path)

    def discard(self, path: str) -> None:
        """Forget the entry for *path* without notifying listeners."""
        self._entries.pop(path, None)

    def subscribe(self, path: str, listener: Listener) -> Subscription:
        """Call *listener* after every publish for *path*."""
        subscription = Subscription(self, path, listener)
        self._subscriptions.setdefault(path, []).append(subscription)
        return subscription

    def listener_count(self, path: str) -> int:
        return len(self._subscriptions.get(path, []))

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.path)
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._subscriptions[subscription.path]

    async def wait_for(self, path: str, timeout: float) -> bool:
        """Wait until diagnostics for *path* are available.

        Returns immediately when an entry already exists.

        Returns:
            ``True`` if diagnostics arrived, ``False`` on timeout.
        """
        if path in self._entries:
            return True
        event = asyncio.Event()
        with self.subscribe(path, event.set):
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug("Timed out waiting for diagnostics on %s", path)
                return False
        return True

    def clear(self) -> None:
        """Drop all entries and subscriptions (connection teardown)."""
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription._active = False
        self._entries.clear()
        self._subscriptions.clear()


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def filter_by_severity(
    diagnostics: list[Diagnostic], severity: SeverityFilter
) -> list[Diagnostic]:
    """Keep diagnostics at least as severe as *severity*.

    Diagnostics without a severity are treated as errors.
    """
    if severity == "all":
        return list(diagnostics)
    threshold = _SEVERITY_THRESHOLDS[severity]
    return [d for d in diagnostics if (d.get("severity") or 1) <= threshold]


def format_diagnostic(diag: Diagnostic) -> str:
    """Format one diagnostic as ``ERROR [line:col] message`` (1-based)."""
    label = SEVERITY_LABELS.get(diag.get("severity") or 2, "warning").upper()
    start = diag.get("range", {}).get("start", {})
    line = start.get("line", 0) + 1
    character = start.get("character", 0) + 1
    return f"{label} [{line}:{character}] {diag.get('message', '')}"


def normalize_diagnostics(raw: list[Diagnostic]) -> list[dict[str, Any]]:
    """Convert raw LSP diagnostics into a simplified format."""
    results: list[dict[str, Any]] = []
    for diag in raw:
        severity_num = diag.get("severity", 1)
        start = diag.get("range", {}).get("start", {})
        results.append(
            {
                "severity": SEVERITY_LABELS.get(severity_num, "unknown"),
                "line": start.get("line", 0),
                "character": start.get("character", 0),
                "message": diag.get("message", ""),
                "source": diag.get("source", ""),
            }
        )
    return results


def format_diagnostics(diagnostics: list[dict[str, Any]]) -> str:
    """Format normalized diagnostics as a human-readable block.

    Example output::

        LSP Diagnostics:
          error line 42: Type 'string' is not assignable to 'number' [typescript]
          warning line 15: Unused variable 'x' [typescript]
    """
    if not diagnostics:
        return ""

    lines: list[str] = ["LSP Diagnostics:"]
    for diag in diagnostics:
        source = diag.get("source", "")
        source_suffix = f" [{source}]" if source else ""
        lines.append(
            f"  {diag.get('severity', 'unknown')} line {diag.get('line', 0) + 1}: "
            f"{diag.get('message', '')}{source_suffix}"
        )
    return "\n".join(lines)
