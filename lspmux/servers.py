"""Language server definitions.

Each :class:`ServerConfig` says which file extensions a server handles, how
to find the project root for a file, and how to spawn it for that root.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lspmux.config import LspSettings
from lspmux.launcher import SpawnedServer, SpawnFunction, spawn_checked, simple_spawner, which
from lspmux.roots import RootFinder, cwd_root, marker_root

logger = logging.getLogger("lspmux.servers")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for an LSP server."""

    id: str
    """Unique identifier; also the registry key together with the root."""

    extensions: tuple[str, ...]
    """File extensions (with leading dot) this server handles."""

    find_root: RootFinder
    """``(file, cwd) -> root | None``."""

    spawn: SpawnFunction
    """``async (root, settings) -> SpawnedServer | None``."""

    language_ids: dict[str, str] = field(default_factory=dict)
    """Extension -> LSP ``languageId``; unlisted extensions use :attr:`id`."""

    framing: str = "newline"
    """Wire framing name (see :mod:`lspmux.framing`)."""

    init_options: dict[str, Any] | None = None
    """Default ``initializationOptions`` sent during initialize."""

    def handles(self, file_path: str) -> bool:
        return Path(file_path).suffix.lower() in self.extensions

    def language_id(self, file_path: str) -> str:
        ext = Path(file_path).suffix.lower()
        return self.language_ids.get(ext, self.id)


# ---------------------------------------------------------------------------
# TypeScript / JavaScript
# ---------------------------------------------------------------------------


async def spawn_typescript_server(root: str, settings: LspSettings) -> SpawnedServer | None:
    """Prefer the project's own typescript-language-server and tsserver."""
    local = os.path.join(root, "node_modules", ".bin", "typescript-language-server")
    command = local if os.path.isfile(local) else which("typescript-language-server")
    if command is None:
        return None

    process = await spawn_checked(command, ["--stdio"], root, settings.spawn_check_delay)
    if process is None:
        return None

    init_options = None
    local_tsserver = os.path.join(root, "node_modules", ".bin", "tsserver")
    if os.path.isfile(local_tsserver):
        init_options = {"typescript": {"serverPath": local_tsserver}}
    return SpawnedServer(process=process, init_options=init_options, command=[command, "--stdio"])


TYPESCRIPT_SERVER = ServerConfig(
    id="typescript",
    extensions=(".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts"),
    # Deno projects are left to the Deno language server
    find_root=marker_root(
        "package.json", "tsconfig.json", "jsconfig.json",
        exclude=("deno.json", "deno.jsonc"),
    ),
    spawn=spawn_typescript_server,
    language_ids={
        ".ts": "typescript",
        ".mts": "typescript",
        ".cts": "typescript",
        ".tsx": "typescriptreact",
        ".js": "javascript",
        ".mjs": "javascript",
        ".cjs": "javascript",
        ".jsx": "javascriptreact",
    },
)

PYRIGHT_SERVER = ServerConfig(
    id="pyright",
    extensions=(".py", ".pyi"),
    find_root=marker_root(
        "pyproject.toml", "setup.py", "requirements.txt", "pyrightconfig.json"
    ),
    spawn=simple_spawner("pyright-langserver", ["--stdio"]),
    language_ids={".py": "python", ".pyi": "python"},
)

MARKSMAN_SERVER = ServerConfig(
    id="marksman",
    extensions=(".md",),
    find_root=cwd_root,
    spawn=simple_spawner("marksman", ["server"]),
    language_ids={".md": "markdown"},
)

YAML_SERVER = ServerConfig(
    id="yaml",
    extensions=(".yaml", ".yml"),
    find_root=cwd_root,
    spawn=simple_spawner("yaml-language-server", ["--stdio"]),
)

JSON_SERVER = ServerConfig(
    id="json",
    extensions=(".json",),
    find_root=cwd_root,
    spawn=simple_spawner(["vscode-json-languageserver", "json-languageserver"], ["--stdio"]),
)

LSP_SERVERS: list[ServerConfig] = [
    TYPESCRIPT_SERVER,
    PYRIGHT_SERVER,
    MARKSMAN_SERVER,
    YAML_SERVER,
    JSON_SERVER,
]


def find_server_for_file(
    file_path: str, servers: list[ServerConfig] | None = None
) -> ServerConfig | None:
    """Find the first server config whose extensions include *file_path*'s.

    Returns:
        The matching ``ServerConfig`` or ``None`` if no server is registered
        for this file type.
    """
    for config in LSP_SERVERS if servers is None else servers:
        if config.handles(file_path):
            return config
    logger.debug("No LSP server registered for %s", file_path)
    return None


def language_id_for_file(
    file_path: str, servers: list[ServerConfig] | None = None
) -> str:
    """Return the LSP ``languageId`` for *file_path* (``plaintext`` if unknown)."""
    config = find_server_for_file(file_path, servers)
    return config.language_id(file_path) if config else "plaintext"
