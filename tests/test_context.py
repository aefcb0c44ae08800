"""Unit tests for request contexts and transport snapshots."""
import dataclasses
import gc

import pytest

from mcp_dispatch.connection import Connection, Route
from mcp_dispatch.context import RequestContext, SessionRef, TransportMetadata, build_context
from mcp_dispatch.registry import RegistryHandler


def test_transport_metadata_from_mapping():
    """Test that transport details are copied into plain values."""
    headers = {"Content-Type": "application/json", "X-Request-Id": "42"}

    metadata = TransportMetadata.from_mapping({
        "remote_addr": ("127.0.0.1", 5000),
        "path": "/mcp",
        "method": "POST",
        "headers": headers,
    })
    headers["X-Request-Id"] = "changed"

    assert metadata.remote_addr == "('127.0.0.1', 5000)"
    assert metadata.path == "/mcp"
    assert metadata.header("x-request-id") == "42"
    assert metadata.header("X-Missing", "default") == "default"
    assert isinstance(metadata.headers, tuple)


def test_transport_metadata_passthrough_and_none():
    """Test that existing snapshots and None are returned as-is."""
    metadata = TransportMetadata(path="/mcp")

    assert TransportMetadata.from_mapping(metadata) is metadata
    assert TransportMetadata.from_mapping(None) is None


def test_context_is_immutable():
    """Test that a context cannot be changed after construction."""
    ctx = build_context(SessionRef("s"), request_id=1, client_capabilities={"a": {}})

    with pytest.raises(dataclasses.FrozenInstanceError):
        ctx.request_id = 2
    with pytest.raises(TypeError):
        ctx.client_capabilities["b"] = {}


def test_context_snapshots_capabilities():
    """Test that capabilities are copied, not shared."""
    caps = {"sampling": {"enabled": True}}

    ctx = build_context(SessionRef(None), client_capabilities=caps)
    caps["sampling"]["enabled"] = False

    assert ctx.client_capabilities["sampling"]["enabled"] is True


def test_context_defaults():
    """Test a context built without request data."""
    ctx = build_context(SessionRef(None))

    assert ctx.request_id is None
    assert ctx.client_capabilities is None
    assert ctx.transport is None
    assert dict(ctx.custom_data) == {}
    assert ctx.session.resolve() is None


def test_read_only_mapping_defaults():
    """Test that read-only mapping defaults work as dataclass fields."""
    ctx = RequestContext(SessionRef(None))
    route = Route("list_tools")

    assert dict(ctx.custom_data) == {}
    assert dict(route.aliases) == {}
    with pytest.raises(TypeError):
        ctx.custom_data["key"] = "value"
    assert all(dataclasses.is_dataclass(obj) for obj in (ctx, route))


@pytest.mark.asyncio
async def test_session_ref_does_not_keep_connection_alive():
    """Test that a context outliving its session resolves to None."""
    connection = await Connection.start(RegistryHandler(), session_id="weak")
    ctx = connection._context()
    resolves_to_connection = ctx.session.resolve() is connection

    assert resolves_to_connection

    await connection.terminate()
    del connection
    gc.collect()

    assert ctx.session.resolve() is None
    assert ctx.session_id == "weak"
