"""Unit tests for environment-driven settings."""
import pytest

from mcp_dispatch.config import DEFAULT_HANDLER, Settings, load_handler_class
from mcp_dispatch.registry import RegistryHandler
from mcp_dispatch.utils.errors import ConfigurationError


def test_defaults():
    """Test settings with an empty environment."""
    settings = Settings.from_env({})

    assert settings.handler == DEFAULT_HANDLER
    assert settings.handler_options == {}
    assert settings.notification_methods == frozenset()
    assert settings.session_timeout_minutes == 30
    assert settings.dispatch_timeout_seconds == 5.0
    assert settings.stateless_fallback is True
    assert settings.log_level == "INFO"


def test_values_from_environment():
    """Test parsing of every supported variable."""
    settings = Settings.from_env({
        "MCP_HANDLER": "my_pkg.handlers:FilesHandler",
        "MCP_HANDLER_OPTIONS": '{"root": "/srv"}',
        "MCP_NOTIFICATION_METHODS": "listTools, listPrompts,",
        "MCP_SESSION_TIMEOUT_MINUTES": "5",
        "MCP_CLEANUP_INTERVAL_SECONDS": "10",
        "MCP_DISPATCH_TIMEOUT_SECONDS": "0",
        "MCP_STATELESS_FALLBACK": "false",
        "LOG_LEVEL": "debug",
    })

    assert settings.handler == "my_pkg.handlers:FilesHandler"
    assert settings.handler_options == {"root": "/srv"}
    assert settings.notification_methods == {"listTools", "listPrompts"}
    assert settings.session_timeout_minutes == 5
    assert settings.cleanup_interval_seconds == 10.0
    assert settings.dispatch_timeout_seconds is None
    assert settings.stateless_fallback is False
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "environ",
    [
        {"MCP_HANDLER_OPTIONS": "{not json"},
        {"MCP_SESSION_TIMEOUT_MINUTES": "soon"},
        {"MCP_SESSION_TIMEOUT_MINUTES": "0"},
    ],
)
def test_invalid_values(environ):
    """Test that unparsable settings raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        Settings.from_env(environ)


def test_load_default_handler_class():
    """Test importing the default handler."""
    assert load_handler_class(DEFAULT_HANDLER) is RegistryHandler


@pytest.mark.parametrize(
    "path",
    [
        "mcp_dispatch.registry",
        "mcp_dispatch.does_not_exist:Handler",
        "mcp_dispatch.registry:CapabilityRegistry",
        "mcp_dispatch.registry:Missing",
    ],
)
def test_load_invalid_handler_class(path):
    """Test that bad handler paths raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        load_handler_class(path)
