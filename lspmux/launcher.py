"""Language server process launching.

Resolves server binaries on the host and spawns them with piped stdio.
A spawn function returns ``None`` when the server cannot run here; callers
treat that as "language unavailable", never as a hard failure.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from lspmux.config import LspSettings

logger = logging.getLogger("lspmux.launcher")


@dataclass
class SpawnedServer:
    """A started server process and its ``initializationOptions``."""

    process: asyncio.subprocess.Process
    init_options: dict[str, Any] | None = None
    command: list[str] = field(default_factory=list)


SpawnFunction = Callable[[str, LspSettings], Awaitable["SpawnedServer | None"]]


def extra_search_paths() -> list[str]:
    """Directories searched after ``$PATH`` for language server binaries."""
    home = Path.home()
    return [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        str(home / ".local" / "bin"),
        str(home / ".cargo" / "bin"),
        str(home / "go" / "bin"),
        str(home / ".npm-global" / "bin"),
    ]


def which(command: str) -> str | None:
    """Find an executable on ``$PATH`` or in :func:`extra_search_paths`.

    Explicit paths (absolute or ``./``-relative) are checked directly.
    """
    if os.path.isabs(command) or command.startswith(("./", "../")):
        full = os.path.abspath(command)
        return full if os.path.isfile(full) and os.access(full, os.X_OK) else None

    found = shutil.which(command)
    if found is not None:
        return found
    return shutil.which(command, path=os.pathsep.join(extra_search_paths()))


async def spawn_process(
    command: str, args: Sequence[str], cwd: str
) -> asyncio.subprocess.Process | None:
    """Start *command* with piped stdin/stdout/stderr in *cwd*."""
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.error("LSP server binary not found: %s", command)
        return None
    except OSError as exc:
        logger.error("Failed to start LSP server %s: %s", command, exc)
        return None
    logger.info("Started LSP server %s (pid=%s)", command, process.pid)
    return process


async def spawn_checked(
    command: str, args: Sequence[str], cwd: str, check_delay: float = 0.2
) -> asyncio.subprocess.Process | None:
    """Spawn and treat an immediate exit (e.g. an unsupported flag) as failure."""
    process = await spawn_process(command, args, cwd)
    if process is None:
        return None
    try:
        await asyncio.wait_for(process.wait(), timeout=check_delay)
    except asyncio.TimeoutError:
        return process
    logger.warning(
        "LSP server %s exited immediately with code %s", command, process.returncode
    )
    return None


async def spawn_with_fallback(
    command: str,
    arg_variants: Sequence[Sequence[str]],
    cwd: str,
    check_delay: float = 0.2,
) -> asyncio.subprocess.Process | None:
    """Try each argument list in turn until one keeps running."""
    for args in arg_variants:
        process = await spawn_checked(command, args, cwd, check_delay)
        if process is not None:
            return process
    return None


def simple_spawner(
    binaries: str | Sequence[str],
    args: Sequence[str] = ("--stdio",),
    check_delay: float | None = None,
) -> SpawnFunction:
    """Build a spawn function for a server found on the search path.

    Args:
        binaries: Binary name, or candidate names tried in order.
        args: Arguments passed to the binary.
        check_delay: An exit within this many seconds counts as failure
            (see :func:`spawn_checked`). Defaults to
            ``settings.spawn_check_delay``; ``0`` skips the check.
    """
    candidates = [binaries] if isinstance(binaries, str) else list(binaries)

    async def spawn(root: str, settings: LspSettings) -> SpawnedServer | None:
        command = next((c for c in map(which, candidates) if c), None)
        if command is None:
            logger.debug("None of %s found on PATH", candidates)
            return None
        delay = settings.spawn_check_delay if check_delay is None else check_delay
        if delay <= 0:
            process = await spawn_process(command, args, root)
        else:
            process = await spawn_checked(command, args, root, delay)
        if process is None:
            return None
        return SpawnedServer(process=process, command=[command, *args])

    return spawn


async def terminate_process(
    process: asyncio.subprocess.Process, timeout: float = 3.0
) -> int | None:
    """Wait for *process* to exit, killing it after *timeout* seconds."""
    if process.returncode is not None:
        return process.returncode
    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("LSP server (pid=%s) did not exit gracefully, killing", process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        pass
    return await process.wait()
