"""Dispatch engine exposing a pluggable handler over the Model Context Protocol."""
from .connection import Connection, ConnectionState, METHOD_TABLE
from .context import RequestContext, SessionRef, TransportMetadata
from .mcp_handler import MCPHandler
from .outcomes import KEEP, Failure, NoReply, Stop, Success
from .utils.errors import (
    ConnectionTerminatedError,
    MCPError,
    SessionCreationError,
    SessionNotFoundError,
)

__all__ = [
    "Connection",
    "ConnectionState",
    "METHOD_TABLE",
    "RequestContext",
    "SessionRef",
    "TransportMetadata",
    "MCPHandler",
    "KEEP",
    "Failure",
    "NoReply",
    "Stop",
    "Success",
    "ConnectionTerminatedError",
    "MCPError",
    "SessionCreationError",
    "SessionNotFoundError",
]
