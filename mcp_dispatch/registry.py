"""Registry-backed MCP handler with tool, resource and prompt registration."""
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional
import asyncio
import inspect
import logging

from pydantic import BaseModel, Field

from .context import RequestContext
from .jsonrpc.models import ErrorCode
from .mcp_handler import DEFAULT_SERVER_CAPABILITIES, MCPHandler
from .outcomes import Failure, Success

logger = logging.getLogger(__name__)


class ToolSchema(BaseModel):
    name: str
    description: str
    inputSchema: Dict[str, Any]


class ResourceDescriptor(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    mimeType: Optional[str] = None


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptDescriptor(BaseModel):
    id: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


async def _call(func: Callable, **kwargs) -> Any:
    if inspect.iscoroutinefunction(func):
        return await func(**kwargs)
    result = await asyncio.to_thread(func, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class CapabilityRegistry:
    """Tools, resources and prompts shared by every session of a server."""

    def __init__(self):
        self.tools: Dict[str, Callable] = {}
        self.tool_schemas: Dict[str, ToolSchema] = {}
        self.resources: Dict[str, Callable] = {}
        self.resource_descriptors: Dict[str, ResourceDescriptor] = {}
        self.prompts: Dict[str, Callable] = {}
        self.prompt_descriptors: Dict[str, PromptDescriptor] = {}

    def register_tool(
        self, name: str, description: str, input_schema: Dict[str, Any], handler: Callable
    ) -> None:
        """Register an MCP tool. ``handler`` is called with the tool inputs as kwargs."""
        self.tools[name] = handler
        self.tool_schemas[name] = ToolSchema(
            name=name, description=description, inputSchema=input_schema
        )
        logger.info(f"Registered tool: {name}")

    def register_resource(
        self,
        resource_id: str,
        name: str,
        reader: Callable,
        description: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> None:
        """Register a resource. ``reader`` receives the request params as kwargs."""
        self.resources[resource_id] = reader
        self.resource_descriptors[resource_id] = ResourceDescriptor(
            id=resource_id, name=name, description=description, mimeType=mime_type
        )
        logger.info(f"Registered resource: {resource_id}")

    def register_prompt(
        self,
        prompt_id: str,
        renderer: Callable,
        description: Optional[str] = None,
        arguments: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Register a prompt template. ``renderer`` returns the prompt messages."""
        self.prompts[prompt_id] = renderer
        self.prompt_descriptors[prompt_id] = PromptDescriptor(
            id=prompt_id,
            description=description,
            arguments=[PromptArgument(**arg) for arg in arguments or []],
        )
        logger.info(f"Registered prompt: {prompt_id}")

    def list_tools(self) -> List[Dict[str, Any]]:
        """List all registered tools."""
        return [schema.model_dump() for schema in self.tool_schemas.values()]

    def list_resources(self) -> List[Dict[str, Any]]:
        return [d.model_dump(exclude_none=True) for d in self.resource_descriptors.values()]

    def list_prompts(self) -> List[Dict[str, Any]]:
        return [d.model_dump(exclude_none=True) for d in self.prompt_descriptors.values()]

    async def execute_tool(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        """Execute a registered tool."""
        if tool_name not in self.tools:
            raise KeyError(tool_name)

        handler = self.tools[tool_name]
        return await _call(handler, **arguments)

    async def read_resource(self, resource_id: str, params: Dict[str, Any]) -> Any:
        if resource_id not in self.resources:
            raise KeyError(resource_id)
        return await _call(self.resources[resource_id], **params)

    async def render_prompt(self, prompt_id: str, arguments: Dict[str, Any]) -> Any:
        if prompt_id not in self.prompts:
            raise KeyError(prompt_id)
        return await _call(self.prompts[prompt_id], **arguments)


@dataclass(frozen=True)
class RegistryState:
    """Per-session state of a ``RegistryHandler``."""

    options: Dict[str, Any] = field(default_factory=dict)
    client_capabilities: Optional[Dict[str, Any]] = None
    tool_calls: int = 0


class RegistryHandler(MCPHandler):
    """MCP handler serving whatever is registered in a ``CapabilityRegistry``.

    Options accepted by ``init``:
        server_capabilities: capability map to advertise (defaults to
            resources, prompts and tools)
    """

    def __init__(self, registry: Optional[CapabilityRegistry] = None):
        self.registry = registry if registry is not None else CapabilityRegistry()

    def init(self, options: Dict[str, Any]) -> Success:
        return Success(state=RegistryState(options=dict(options)))

    async def server_capabilities(self, ctx: RequestContext, state: RegistryState) -> Success:
        caps = state.options.get("server_capabilities", DEFAULT_SERVER_CAPABILITIES)
        return Success(dict(caps))

    async def handle_client_capabilities(
        self, ctx: RequestContext, client_capabilities: Dict[str, Any], state: RegistryState
    ) -> Success:
        return Success(state=replace(state, client_capabilities=client_capabilities))

    async def list_resources(self, ctx, params, state):
        return Success(self.registry.list_resources())

    async def get_resource(self, ctx, resource_id, params, state):
        descriptor = self.registry.resource_descriptors.get(resource_id)
        if descriptor is None:
            return Failure({
                "code": ErrorCode.RESOURCE_NOT_FOUND,
                "message": f"Resource not found: {resource_id}",
            })
        read_params = {k: v for k, v in params.items() if k != "id"}
        try:
            contents = await self.registry.read_resource(resource_id, read_params)
        except Exception as e:
            logger.error(f"Resource {resource_id} failed: {e}", exc_info=True)
            return Failure({
                "code": ErrorCode.RESOURCE_READ_ERROR,
                "message": f"Resource read failed: {resource_id}",
                "data": {"details": str(e)},
            })
        return Success({**descriptor.model_dump(exclude_none=True), "contents": contents})

    async def list_prompts(self, ctx, params, state):
        return Success(self.registry.list_prompts())

    async def get_prompt(self, ctx, prompt_id, params, state):
        descriptor = self.registry.prompt_descriptors.get(prompt_id)
        if descriptor is None:
            return Failure({
                "code": ErrorCode.PROMPT_NOT_FOUND,
                "message": f"Prompt not found: {prompt_id}",
            })
        arguments = params.get("arguments") or {}
        missing = [
            arg.name for arg in descriptor.arguments
            if arg.required and arg.name not in arguments
        ]
        if missing:
            return Failure({
                "code": ErrorCode.INVALID_PARAMS,
                "message": f"Missing prompt arguments: {', '.join(missing)}",
            })
        try:
            messages = await self.registry.render_prompt(prompt_id, arguments)
        except Exception as e:
            logger.error(f"Prompt {prompt_id} failed: {e}", exc_info=True)
            return Failure({
                "code": ErrorCode.PROMPT_RENDER_ERROR,
                "message": f"Prompt rendering failed: {prompt_id}",
                "data": {"details": str(e)},
            })
        return Success({**descriptor.model_dump(exclude_none=True), "messages": messages})

    async def list_tools(self, ctx, params, state):
        return Success(self.registry.list_tools())

    async def execute_tool(self, ctx, tool_id, tool_inputs, state):
        if tool_id not in self.registry.tools:
            return Failure({
                "code": ErrorCode.TOOL_NOT_FOUND,
                "message": f"Tool not found: {tool_id}",
            })

        calls = replace(state, tool_calls=state.tool_calls + 1)
        try:
            result = await self.registry.execute_tool(tool_id, tool_inputs)
        except Exception as e:
            logger.error(f"Tool {tool_id} failed: {e}", exc_info=True)
            return Failure(
                {
                    "code": ErrorCode.TOOL_EXECUTION_ERROR,
                    "message": f"Tool execution failed: {tool_id}",
                    "data": {"details": str(e)},
                },
                state=calls,
            )
        return Success(result, state=calls)
