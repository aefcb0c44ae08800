"""MCP handler contract implemented by capability providers.

A handler owns all business logic for resources, prompts and tools. The
``Connection`` holds one handler instance per session and threads an opaque
``state`` value through every call: each operation receives the current state
and returns an outcome (``Success``, ``Failure`` and, for optional
operations, ``NoReply``) that may carry a replacement state.

Operations may be coroutines or plain functions; plain functions run in a
worker thread.

Example::

    class CounterHandler(MCPHandler):
        def init(self, options):
            return Success(state={"calls": 0})

        async def server_capabilities(self, ctx, state):
            return Success({"tools": {}})

        async def list_tools(self, ctx, params, state):
            return Success([{"name": "count"}], state={"calls": state["calls"] + 1})
        ...
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Union
import logging

from .context import RequestContext
from .jsonrpc.models import RequestId
from .outcomes import Failure, NoReply, Stop, Success

logger = logging.getLogger(__name__)

DEFAULT_SERVER_CAPABILITIES: Dict[str, Any] = {
    "resources": {},
    "prompts": {},
    "tools": {},
}

Reply = Union[Success, Failure]


class MCPHandler(ABC):
    """Base class for MCP capability providers.

    Required operations are abstract. ``handle_client_capabilities``,
    ``handle_sampling_response`` and ``terminate`` have default
    implementations that subclasses may override.
    """

    @abstractmethod
    def init(self, options: Dict[str, Any]) -> Union[Success, Stop]:
        """Create the initial handler state.

        Return ``Success(state=initial_state)``, or ``Stop(reason)`` to refuse
        the session.
        """

    @abstractmethod
    def server_capabilities(self, ctx: RequestContext, state: Any) -> Reply:
        """Return ``Success(capabilities_map)`` advertised during the handshake.

        Called once at session creation, with a context that has no request id
        and no client capabilities.
        """

    def handle_client_capabilities(
        self, ctx: RequestContext, client_capabilities: Dict[str, Any], state: Any
    ) -> Union[Success, Failure, NoReply]:
        """Inspect the capabilities a client declared in ``initialize``.

        Default: accept them without changing state.
        """
        return Success(state=state)

    @abstractmethod
    def list_resources(self, ctx: RequestContext, params: Dict[str, Any], state: Any) -> Reply:
        """Return ``Success(sequence_of_resource_descriptors)``."""

    @abstractmethod
    def get_resource(
        self, ctx: RequestContext, resource_id: str, params: Dict[str, Any], state: Any
    ) -> Reply:
        """Return ``Success(resource_descriptor)``."""

    @abstractmethod
    def list_prompts(self, ctx: RequestContext, params: Dict[str, Any], state: Any) -> Reply:
        """Return ``Success(sequence_of_prompt_descriptors)``."""

    @abstractmethod
    def get_prompt(
        self, ctx: RequestContext, prompt_id: str, params: Dict[str, Any], state: Any
    ) -> Reply:
        """Return ``Success(prompt_descriptor)``."""

    @abstractmethod
    def list_tools(self, ctx: RequestContext, params: Dict[str, Any], state: Any) -> Reply:
        """Return ``Success(sequence_of_tool_descriptors)``."""

    @abstractmethod
    def execute_tool(
        self, ctx: RequestContext, tool_id: str, tool_inputs: Dict[str, Any], state: Any
    ) -> Reply:
        """Return ``Success(tool_result)``; the result may be any JSON value."""

    def handle_sampling_response(
        self, ctx: RequestContext, request_id: RequestId, data: Dict[str, Any], state: Any
    ) -> Union[NoReply, Failure]:
        """Receive a client's answer to a server-initiated request.

        Default: ignore it.
        """
        return NoReply(state=state)

    def terminate(self, reason: Any, ctx: RequestContext, state: Any) -> Any:
        """Clean up when the session ends. The return value is ignored."""
        logger.debug(f"Handler {type(self).__name__} terminating: {reason!r}")
        return None
