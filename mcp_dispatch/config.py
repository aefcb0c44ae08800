"""Server configuration loaded from environment variables."""
import importlib
import json
import logging
import os
from typing import Any, Dict, FrozenSet, Mapping, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .mcp_handler import MCPHandler
from .utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HANDLER = "mcp_dispatch.registry:RegistryHandler"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime settings for the MCP server."""

    handler: str = DEFAULT_HANDLER
    handler_options: Dict[str, Any] = Field(default_factory=dict)
    notification_methods: FrozenSet[str] = frozenset()
    session_timeout_minutes: int = Field(default=30, gt=0)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0)
    dispatch_timeout_seconds: Optional[float] = Field(default=5.0, gt=0)
    stateless_fallback: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``MCP_*`` environment variables.

        Raises:
            ConfigurationError: if a variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        if "MCP_HANDLER" in env:
            values["handler"] = env["MCP_HANDLER"]
        if "MCP_HANDLER_OPTIONS" in env:
            try:
                values["handler_options"] = json.loads(env["MCP_HANDLER_OPTIONS"])
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"MCP_HANDLER_OPTIONS is not valid JSON: {e}") from e
        if "MCP_NOTIFICATION_METHODS" in env:
            values["notification_methods"] = frozenset(
                m.strip() for m in env["MCP_NOTIFICATION_METHODS"].split(",") if m.strip()
            )
        if "MCP_SESSION_TIMEOUT_MINUTES" in env:
            values["session_timeout_minutes"] = env["MCP_SESSION_TIMEOUT_MINUTES"]
        if "MCP_CLEANUP_INTERVAL_SECONDS" in env:
            values["cleanup_interval_seconds"] = env["MCP_CLEANUP_INTERVAL_SECONDS"]
        if "MCP_DISPATCH_TIMEOUT_SECONDS" in env:
            # Empty or "0" disables the transport-side timeout.
            raw = env["MCP_DISPATCH_TIMEOUT_SECONDS"].strip()
            values["dispatch_timeout_seconds"] = None if raw in ("", "0") else raw
        if "MCP_STATELESS_FALLBACK" in env:
            values["stateless_fallback"] = _env_bool(env["MCP_STATELESS_FALLBACK"])
        if "LOG_LEVEL" in env:
            values["log_level"] = env["LOG_LEVEL"].upper()

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid MCP server settings: {e}") from e


def load_handler_class(path: str) -> Type[MCPHandler]:
    """Import a handler class from a ``package.module:ClassName`` path."""
    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(f"Handler path must look like 'module:ClassName', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import handler module {module_name!r}: {e}") from e

    handler_class = getattr(module, class_name, None)
    if not isinstance(handler_class, type) or not issubclass(handler_class, MCPHandler):
        raise ConfigurationError(f"{path!r} is not an MCPHandler subclass")

    logger.info(f"Loaded MCP handler class: {path}")
    return handler_class
