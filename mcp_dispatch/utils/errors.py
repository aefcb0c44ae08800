"""Custom exception classes for the MCP dispatch engine."""
from typing import Any


class MCPError(Exception):
    """Base exception for MCP-related errors."""

    pass


class SessionCreationError(MCPError):
    """The handler refused or failed to start a session.

    Raised by ``Connection.start`` when ``init`` signals a stop or when
    ``server_capabilities`` does not produce a capability map. The transport
    must not serve a session whose creation failed.
    """

    def __init__(self, reason: Any):
        self.reason = reason
        super().__init__(f"Session creation failed: {reason!r}")


class ConnectionTerminatedError(MCPError):
    """A dispatch was attempted against a terminated connection."""

    pass


class SessionNotFoundError(MCPError):
    """No live session exists for the given session id."""

    pass


class ConfigurationError(MCPError):
    """Invalid server configuration."""

    pass
