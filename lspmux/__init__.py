"""Language server client/multiplexer core.

Provides:
- JsonRpcTransport: JSON-RPC over a byte stream with id-based correlation
- LspConnection: one server process with document and diagnostics state
- ServerRegistry: lazy per-project server lifecycle management
- LSP_SERVERS / ServerConfig: built-in language server definitions
"""

from lspmux.client import ConnectionState, LspConnection
from lspmux.config import EvictionPolicy, LspSettings, load_settings
from lspmux.diagnostics import DiagnosticsCache, Subscription
from lspmux.documents import DocumentSync, OpenFile
from lspmux.errors import (
    ConfigurationError,
    ConnectionClosedError,
    ConnectionStateError,
    DocumentStateError,
    LspError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerUnavailableError,
)
from lspmux.framing import ContentLengthFraming, MessageFraming, NewlineFraming, create_framing
from lspmux.launcher import SpawnedServer
from lspmux.manager import FileDiagnostics, ServerRegistry
from lspmux.servers import LSP_SERVERS, ServerConfig, find_server_for_file
from lspmux.transport import JsonRpcTransport

__all__ = [
    "ConfigurationError",
    "ConnectionClosedError",
    "ConnectionState",
    "ConnectionStateError",
    "ContentLengthFraming",
    "DiagnosticsCache",
    "DocumentStateError",
    "DocumentSync",
    "EvictionPolicy",
    "FileDiagnostics",
    "JsonRpcTransport",
    "LSP_SERVERS",
    "LspConnection",
    "LspError",
    "LspSettings",
    "MessageFraming",
    "NewlineFraming",
    "OpenFile",
    "ProtocolError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "ServerConfig",
    "ServerRegistry",
    "ServerUnavailableError",
    "SpawnedServer",
    "Subscription",
    "create_framing",
    "find_server_for_file",
    "load_settings",
]
