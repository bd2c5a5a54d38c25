"""Standardized error codes for lspmux.

Error code format: LSP-[CATEGORY]-[CODE]

Categories:
- ENV: Host environment errors (binary missing, process failed to start)
- TRANS: Transport errors (process exited, timeouts, cancellation)
- PROTO: JSON-RPC error objects returned by a server
- STATE: Programming errors (wrong connection state, unopened documents)
- CFG: Configuration errors
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ErrorDefinition:
    """Definition of a standardized error code."""

    code: str
    message: str
    retryable: bool = False


LSP_ERRORS: dict[str, ErrorDefinition] = {
    "LSP-ENV-001": ErrorDefinition("LSP-ENV-001", "Language server unavailable"),
    "LSP-TRANS-001": ErrorDefinition("LSP-TRANS-001", "Connection closed"),
    "LSP-TRANS-002": ErrorDefinition(
        "LSP-TRANS-002", "Request timed out", retryable=True
    ),
    "LSP-TRANS-003": ErrorDefinition("LSP-TRANS-003", "Request cancelled"),
    "LSP-PROTO-001": ErrorDefinition("LSP-PROTO-001", "Server returned an error"),
    "LSP-STATE-001": ErrorDefinition("LSP-STATE-001", "Connection not ready"),
    "LSP-STATE-002": ErrorDefinition("LSP-STATE-002", "Document not open"),
    "LSP-CFG-001": ErrorDefinition("LSP-CFG-001", "Configuration error"),
}


class LspError(Exception):
    """Base class for all lspmux errors.

    Subclasses set ``code``; the message defaults to the registered
    definition when none is given.
    """

    code: str = "LSP-INT-000"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        definition = LSP_ERRORS.get(self.code)
        if message is None:
            message = definition.message if definition else "Unknown error"
        super().__init__(message)
        self.retryable = definition.retryable if definition else False
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for tool results."""
        return {
            "error": {
                "code": self.code,
                "message": str(self),
                "retryable": self.retryable,
                "details": self.details,
            }
        }


class ServerUnavailableError(LspError):
    """No language server could be started for a file."""

    code = "LSP-ENV-001"


class ConnectionClosedError(LspError):
    """The server process exited or the connection was shut down."""

    code = "LSP-TRANS-001"


class RequestTimeoutError(LspError):
    """No response arrived before the request timeout."""

    code = "LSP-TRANS-002"


class RequestCancelledError(LspError):
    """The caller cancelled a pending request."""

    code = "LSP-TRANS-003"


class ProtocolError(LspError):
    """A JSON-RPC error object returned for a specific request."""

    code = "LSP-PROTO-001"

    def __init__(
        self,
        rpc_code: int | None,
        message: str,
        data: Any = None,
    ) -> None:
        super().__init__(
            f"LSP error {rpc_code}: {message}",
            details={"rpc_code": rpc_code, "data": data},
        )
        self.rpc_code = rpc_code
        self.rpc_message = message
        self.data = data


class ConnectionStateError(LspError):
    """An operation was attempted on a connection that is not ready."""

    code = "LSP-STATE-001"


class DocumentStateError(LspError):
    """A document notification does not match the tracked open-file state."""

    code = "LSP-STATE-002"


class ConfigurationError(LspError):
    """Invalid settings or server configuration."""

    code = "LSP-CFG-001"


def get_definition(code: str) -> ErrorDefinition | None:
    """Get error definition by code."""
    return LSP_ERRORS.get(code)


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    definition = LSP_ERRORS.get(code)
    return definition.retryable if definition else False
