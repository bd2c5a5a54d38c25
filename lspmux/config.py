"""Centralized configuration for lspmux.

Reads from environment variables with sensible defaults. A YAML file
(``~/.lspmux/config.yaml`` or ``$LSPMUX_CONFIG``) may override any value
and additionally disable servers or pick their framing.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from lspmux.errors import ConfigurationError

logger = logging.getLogger("lspmux.config")


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


DEFAULT_CONFIG_PATH: Path = Path.home() / ".lspmux" / "config.yaml"


@dataclass(frozen=True)
class EvictionPolicy:
    """When to close open documents that are no longer being used.

    Both limits default to ``None``, which disables eviction entirely.
    """

    idle_timeout: float | None = None
    max_open_files: int | None = None

    @property
    def enabled(self) -> bool:
        return self.idle_timeout is not None or self.max_open_files is not None


@dataclass(frozen=True)
class LspSettings:
    """Runtime settings shared by the registry and its connections."""

    request_timeout: float = 10.0
    initialize_timeout: float = 30.0
    shutdown_timeout: float = 3.0
    spawn_check_delay: float = 0.2
    diagnostics_timeout: float = 5.0
    idle_file_timeout: float | None = None
    max_open_files: int | None = None
    stderr_lines: int = 200
    disabled_servers: frozenset[str] = field(default_factory=frozenset)
    framing: dict[str, str] = field(default_factory=dict)

    @property
    def eviction(self) -> EvictionPolicy:
        return EvictionPolicy(
            idle_timeout=self.idle_file_timeout,
            max_open_files=self.max_open_files,
        )

    @classmethod
    def from_env(cls) -> LspSettings:
        """Build settings from ``LSPMUX_*`` environment variables."""
        defaults = cls()
        return cls(
            request_timeout=_env_float(
                "LSPMUX_REQUEST_TIMEOUT", defaults.request_timeout
            ),
            initialize_timeout=_env_float(
                "LSPMUX_INITIALIZE_TIMEOUT", defaults.initialize_timeout
            ),
            shutdown_timeout=_env_float(
                "LSPMUX_SHUTDOWN_TIMEOUT", defaults.shutdown_timeout
            ),
            spawn_check_delay=_env_float(
                "LSPMUX_SPAWN_CHECK_DELAY", defaults.spawn_check_delay
            ),
            diagnostics_timeout=_env_float(
                "LSPMUX_DIAGNOSTICS_TIMEOUT", defaults.diagnostics_timeout
            ),
            idle_file_timeout=_env_float("LSPMUX_IDLE_FILE_TIMEOUT", None),
            max_open_files=_env_int("LSPMUX_MAX_OPEN_FILES", None),
            stderr_lines=_env_int("LSPMUX_STDERR_LINES", defaults.stderr_lines),
        )

    def merged(self, overrides: dict[str, Any]) -> LspSettings:
        """Return a copy with values from a parsed YAML mapping applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown settings: {', '.join(sorted(unknown))}"
            )

        values: dict[str, Any] = {}
        for key, value in overrides.items():
            if key == "disabled_servers":
                if not isinstance(value, list):
                    raise ConfigurationError("disabled_servers must be a list")
                values[key] = frozenset(str(v) for v in value)
            elif key == "framing":
                if not isinstance(value, dict):
                    raise ConfigurationError("framing must be a mapping")
                values[key] = {str(k): str(v) for k, v in value.items()}
            elif key in ("max_open_files", "stderr_lines"):
                if value is not None and not isinstance(value, int):
                    raise ConfigurationError(f"{key} must be an integer")
                values[key] = value
            else:
                if value is not None and not isinstance(value, (int, float)):
                    raise ConfigurationError(f"{key} must be a number")
                values[key] = float(value) if value is not None else None
        return replace(self, **values)


def load_settings(config_path: str | Path | None = None) -> LspSettings:
    """Load settings from the environment, then apply the YAML file if present.

    Args:
        config_path: Explicit YAML path. Defaults to ``$LSPMUX_CONFIG`` or
            ``~/.lspmux/config.yaml``.

    Raises:
        ConfigurationError: If the file cannot be parsed or holds bad values.
    """
    settings = LspSettings.from_env()

    if config_path is None:
        config_path = os.environ.get("LSPMUX_CONFIG") or DEFAULT_CONFIG_PATH
    path = Path(config_path)
    if not path.exists():
        return settings

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if data is None:
        return settings
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")

    logger.debug("Loaded lspmux settings from %s", path)
    return settings.merged(data)
