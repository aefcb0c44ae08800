"""Unit tests for the registry-backed MCP handler."""
import pytest

from mcp_dispatch.connection import Connection
from mcp_dispatch.jsonrpc.models import ErrorCode
from mcp_dispatch.registry import (
    CapabilityRegistry,
    RegistryHandler,
    RegistryState,
    ToolSchema,
)


@pytest.fixture
def registry():
    """Create CapabilityRegistry instance for testing."""
    return CapabilityRegistry()


@pytest.fixture
def sample_tool_handler():
    """Create a sample async tool handler."""
    async def handler(name: str, value: int) -> dict:
        return {"name": name, "value": value, "result": value * 2}
    return handler


def request(method, params=None, id=1):
    return {"jsonrpc": "2.0", "method": method, "params": params or {}, "id": id}


class TestToolRegistration:
    """Test tool registration functionality."""

    def test_register_single_tool(self, registry, sample_tool_handler):
        """Test registering a single tool."""
        input_schema = {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "value": {"type": "integer"}
            },
            "required": ["name", "value"]
        }

        registry.register_tool(
            name="sample_tool",
            description="A sample tool for testing",
            input_schema=input_schema,
            handler=sample_tool_handler
        )

        assert "sample_tool" in registry.tools
        assert registry.tool_schemas["sample_tool"].name == "sample_tool"
        assert registry.tool_schemas["sample_tool"].description == "A sample tool for testing"

    def test_register_tool_overwrites_existing(self, registry):
        """Test that registering a tool with the same name overwrites."""
        async def handler1(**kwargs):
            return "result1"

        async def handler2(**kwargs):
            return "result2"

        registry.register_tool("my_tool", "First version", {"type": "object"}, handler1)
        registry.register_tool("my_tool", "Second version", {"type": "object"}, handler2)

        assert len(registry.tools) == 1
        assert registry.tool_schemas["my_tool"].description == "Second version"

    def test_list_tools_preserves_registration_order(self, registry):
        """Test that tools are listed in registration order."""
        async def handler(**kwargs):
            return {}

        tool_names = ["zebra", "apple", "banana"]
        for name in tool_names:
            registry.register_tool(name, f"{name} tool", {"type": "object"}, handler)

        assert [tool["name"] for tool in registry.list_tools()] == tool_names

    def test_tool_schema_serialization(self):
        """Test serializing ToolSchema to dict."""
        schema = ToolSchema(
            name="test_tool",
            description="A test tool",
            inputSchema={"type": "object", "required": ["param1"]}
        )

        schema_dict = schema.model_dump()

        assert schema_dict["name"] == "test_tool"
        assert schema_dict["inputSchema"]["required"] == ["param1"]


class TestRegistryExecution:
    """Test direct registry calls."""

    @pytest.mark.asyncio
    async def test_execute_tool_success(self, registry, sample_tool_handler):
        """Test successful tool execution."""
        registry.register_tool("sample_tool", "Sample tool", {"type": "object"}, sample_tool_handler)

        result = await registry.execute_tool("sample_tool", {"name": "test", "value": 5})

        assert result == {"name": "test", "value": 5, "result": 10}

    @pytest.mark.asyncio
    async def test_execute_sync_tool(self, registry):
        """Test that plain functions can be registered as tools."""
        registry.register_tool("upper", "Uppercase", {"type": "object"}, lambda text: text.upper())

        assert await registry.execute_tool("upper", {"text": "abc"}) == "ABC"

    @pytest.mark.asyncio
    async def test_execute_tool_not_found(self, registry):
        """Test executing a non-existent tool."""
        with pytest.raises(KeyError):
            await registry.execute_tool("nonexistent_tool", {})


class TestRegistryHandler:
    """Test RegistryHandler behind a Connection."""

    @pytest.fixture
    def populated(self, registry, sample_tool_handler):
        registry.register_tool("sample_tool", "Sample tool", {"type": "object"}, sample_tool_handler)

        async def failing_handler(**kwargs):
            raise RuntimeError("Handler failed")

        registry.register_tool("failing_tool", "Tool that fails", {"type": "object"}, failing_handler)
        registry.register_resource(
            "readme", "README", reader=lambda: "# Hello", description="Project readme",
            mime_type="text/markdown",
        )
        registry.register_prompt(
            "greet",
            renderer=lambda who: [{"role": "user", "content": f"Say hi to {who}"}],
            description="Greeting",
            arguments=[{"name": "who", "required": True}],
        )
        return registry

    @pytest.mark.asyncio
    async def test_default_capabilities(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        response = await connection.dispatch(request("initialize", {"capabilities": {}}))

        assert response["result"]["serverCapabilities"] == {
            "resources": {}, "prompts": {}, "tools": {}
        }

    @pytest.mark.asyncio
    async def test_capabilities_from_options(self, populated):
        connection = await Connection.start(
            RegistryHandler(populated), {"server_capabilities": {"tools": {"listChanged": False}}}
        )

        assert connection.server_capabilities == {"tools": {"listChanged": False}}

    @pytest.mark.asyncio
    async def test_handshake_records_client_capabilities(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        await connection.dispatch(request("initialize", {"capabilities": {"sampling": {}}}))

        assert isinstance(connection.handler_state, RegistryState)
        assert connection.handler_state.client_capabilities == {"sampling": {}}

    @pytest.mark.asyncio
    async def test_list_and_execute_tools(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        listed = await connection.dispatch(request("listTools"))
        executed = await connection.dispatch(request(
            "executeTool", {"toolId": "sample_tool", "toolInputs": {"name": "n", "value": 3}}
        ))

        assert [tool["name"] for tool in listed["result"]["tools"]] == ["sample_tool", "failing_tool"]
        assert executed["result"]["result"] == 6
        assert connection.handler_state.tool_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        response = await connection.dispatch(
            request("executeTool", {"toolId": "missing", "toolInputs": {}})
        )

        assert response["error"]["code"] == ErrorCode.TOOL_NOT_FOUND
        assert "missing" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_execution_error(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        response = await connection.dispatch(
            request("executeTool", {"toolId": "failing_tool", "toolInputs": {}})
        )

        assert response["error"]["code"] == ErrorCode.TOOL_EXECUTION_ERROR
        assert response["error"]["data"] == {"details": "Handler failed"}
        assert connection.handler_state.tool_calls == 1

    @pytest.mark.asyncio
    async def test_resources(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        listed = await connection.dispatch(request("listResources"))
        fetched = await connection.dispatch(request("getResource", {"id": "readme"}))
        missing = await connection.dispatch(request("getResource", {"id": "nope"}))

        assert listed["result"]["resources"] == [{
            "id": "readme", "name": "README", "description": "Project readme",
            "mimeType": "text/markdown",
        }]
        assert fetched["result"]["contents"] == "# Hello"
        assert missing["error"]["code"] == ErrorCode.RESOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_prompts(self, populated):
        connection = await Connection.start(RegistryHandler(populated))

        listed = await connection.dispatch(request("listPrompts"))
        rendered = await connection.dispatch(
            request("getPrompt", {"id": "greet", "arguments": {"who": "Ada"}})
        )
        incomplete = await connection.dispatch(request("getPrompt", {"id": "greet"}))
        missing = await connection.dispatch(request("getPrompt", {"id": "nope"}))

        assert listed["result"]["prompts"][0]["id"] == "greet"
        assert rendered["result"]["messages"] == [{"role": "user", "content": "Say hi to Ada"}]
        assert incomplete["error"]["code"] == ErrorCode.INVALID_PARAMS
        assert missing["error"]["code"] == ErrorCode.PROMPT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_reader_and_renderer_errors_are_declared(self, populated):
        def broken(**kwargs):
            raise OSError("disk gone")

        populated.register_resource("broken", "Broken", reader=broken)
        populated.register_prompt("broken", renderer=broken)
        connection = await Connection.start(RegistryHandler(populated))

        resource = await connection.dispatch(request("getResource", {"id": "broken"}))
        prompt = await connection.dispatch(request("getPrompt", {"id": "broken"}))

        assert resource["error"] == {
            "code": ErrorCode.RESOURCE_READ_ERROR,
            "message": "Resource read failed: broken",
            "data": {"details": "disk gone"},
        }
        assert prompt["error"] == {
            "code": ErrorCode.PROMPT_RENDER_ERROR,
            "message": "Prompt rendering failed: broken",
            "data": {"details": "disk gone"},
        }

    @pytest.mark.asyncio
    async def test_sessions_share_registry_not_state(self, populated):
        first = await Connection.start(RegistryHandler(populated))
        second = await Connection.start(RegistryHandler(populated))

        await first.dispatch(request(
            "executeTool", {"toolId": "sample_tool", "toolInputs": {"name": "n", "value": 1}}
        ))

        assert first.handler_state.tool_calls == 1
        assert second.handler_state.tool_calls == 0
