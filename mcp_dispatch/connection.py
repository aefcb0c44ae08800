"""Per-session MCP connection: state holder and JSON-RPC dispatcher.

A ``Connection`` owns one handler instance and its state for the lifetime of
a session. Dispatches are processed one at a time, in arrival order, so a
handler never sees concurrent access to its own state.
"""
import asyncio
import copy
import inspect
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .context import RequestContext, SessionRef, build_context
from .jsonrpc.formatter import (
    error_response,
    initialize_response,
    make_error,
    success_response,
)
from .jsonrpc.models import (
    JSONRPC_VERSION,
    ErrorCode,
    JSONRPCError,
    JSONRPCRequest,
    RequestId,
)
from .mcp_handler import MCPHandler
from .outcomes import KEEP, Failure, NoReply, Stop, Success, carries_state
from .utils.errors import ConnectionTerminatedError, SessionCreationError
from .utils.validation import validate_method_name, validate_request_id

logger = logging.getLogger(__name__)

INITIALIZE_METHOD = "initialize"


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class Route:
    """How a protocol method maps onto a handler operation.

    ``required`` parameters are passed positionally, in order, ahead of the
    full params dict (unless ``pass_params`` is false). ``aliases`` names a
    fallback key for a required parameter.
    """

    operation: str
    required: Tuple[str, ...] = ()
    aliases: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    pass_params: bool = True
    listing: bool = False

    def extract(self, params: Dict[str, Any]) -> Tuple[Tuple[Any, ...], List[str]]:
        values = []
        for name in self.required:
            value = params.get(name)
            if value is None and name in self.aliases:
                value = params.get(self.aliases[name])
            values.append(value)

        missing = [name for name, value in zip(self.required, values) if value is None]
        args = tuple(values) + ((params,) if self.pass_params else ())
        return args, missing


# Wire method name -> handler operation. ``initialize`` is handled separately.
METHOD_TABLE: Mapping[str, Route] = MappingProxyType({
    "listResources": Route("list_resources", listing=True),
    "getResource": Route("get_resource", required=("id",)),
    "listPrompts": Route("list_prompts", listing=True),
    "getPrompt": Route("get_prompt", required=("id",)),
    "listTools": Route("list_tools", listing=True),
    "executeTool": Route(
        "execute_tool",
        required=("toolId", "toolInputs"),
        aliases=MappingProxyType({"toolInputs": "params"}),
        pass_params=False,
    ),
})

PROTOCOL_METHODS = frozenset((INITIALIZE_METHOD, *METHOD_TABLE))


async def _invoke(operation: Callable[..., Any], *args: Any) -> Any:
    """Run a handler operation, coroutine or plain function.

    Plain functions run in a worker thread so a blocking handler only holds
    up its own session.
    """
    if inspect.iscoroutinefunction(operation):
        return await operation(*args)
    value = await asyncio.to_thread(operation, *args)
    if inspect.isawaitable(value):
        return await value
    return value


class Connection:
    """Dispatch engine for one MCP session."""

    def __init__(
        self,
        handler: MCPHandler,
        session_id: Optional[str] = None,
        notification_methods: Iterable[str] = (),
    ):
        self.handler = handler
        self.session_id = session_id
        self.notification_methods = frozenset(notification_methods)

        self.handler_state: Any = None
        self.server_capabilities: Dict[str, Any] = {}
        self.client_capabilities: Optional[Dict[str, Any]] = None
        self.state = ConnectionState.UNINITIALIZED

        self._lock = asyncio.Lock()
        self._terminate_called = False
        self._session_ref = SessionRef(session_id, weakref.ref(self))

    def __repr__(self) -> str:
        return (
            f"<Connection session_id={self.session_id!r} state={self.state.value} "
            f"handler={type(self.handler).__name__}>"
        )

    # --- Lifecycle ---

    @classmethod
    async def start(
        cls,
        handler: MCPHandler,
        options: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        notification_methods: Iterable[str] = (),
    ) -> "Connection":
        """Create a session: run the handler's ``init`` then ``server_capabilities``.

        Raises:
            SessionCreationError: if the handler stops, fails or returns an
                unexpected value. ``terminate`` has been called by then.
        """
        connection = cls(handler, session_id=session_id, notification_methods=notification_methods)
        try:
            await connection._start(options or {})
        except SessionCreationError as e:
            logger.error(f"Failed to start MCP session {session_id}: {e.reason!r}")
            await connection.terminate(e.reason)
            raise
        logger.info(f"Started MCP session {session_id} with handler {type(handler).__name__}")
        return connection

    async def _start(self, options: Dict[str, Any]) -> None:
        try:
            outcome = await _invoke(self.handler.init, options)
        except Exception as e:
            raise SessionCreationError(("handler_init_failed", "exception", repr(e))) from e

        if isinstance(outcome, Stop):
            raise SessionCreationError(("handler_init_failed", outcome.reason))
        if not isinstance(outcome, Success):
            raise SessionCreationError(("handler_init_failed", "bad_return", outcome))
        self.handler_state = outcome.value if outcome.state is KEEP else outcome.state

        ctx = self._context()
        try:
            outcome = await _invoke(self.handler.server_capabilities, ctx, self.handler_state)
        except Exception as e:
            raise SessionCreationError(("server_capabilities_error", "exception", repr(e))) from e

        if isinstance(outcome, Failure):
            self._commit(outcome)
            raise SessionCreationError(("server_capabilities_error", outcome.error))
        if not isinstance(outcome, Success) or not isinstance(outcome.value, Mapping):
            raise SessionCreationError(("bad_server_capabilities_return", outcome))

        self._commit(outcome)
        self.server_capabilities = copy.deepcopy(dict(outcome.value))

    async def terminate(self, reason: Any = "normal") -> None:
        """End the session and call the handler's ``terminate`` exactly once.

        Safe to call repeatedly; only the first call reaches the handler. Waits
        for an in-flight dispatch to finish first. Dispatches queued behind it
        are rejected with ``ConnectionTerminatedError``.
        """
        if self._terminate_called:
            return
        self.state = ConnectionState.TERMINATED

        async with self._lock:
            # Claimed under the lock: a call cancelled while queued leaves
            # terminate to the next caller.
            if self._terminate_called:
                return
            self._terminate_called = True
            ctx = self._context()
            try:
                await _invoke(self.handler.terminate, reason, ctx, self.handler_state)
            except Exception:
                logger.error(
                    f"Handler terminate raised for session {self.session_id}", exc_info=True
                )
        logger.info(f"Terminated MCP session {self.session_id}: {reason!r}")

    @property
    def terminated(self) -> bool:
        return self.state is ConnectionState.TERMINATED

    @property
    def busy(self) -> bool:
        """True while a dispatch or terminate holds the session."""
        return self._lock.locked()

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.terminate("normal" if exc is None else exc)
        return False

    # --- Dispatch ---

    async def dispatch(
        self,
        request: Union[Mapping[str, Any], JSONRPCRequest],
        transport: Any = None,
        custom_data: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Process one decoded JSON-RPC request.

        Args:
            request: Decoded request object (dict or ``JSONRPCRequest``)
            transport: Transport metadata snapshot (``TransportMetadata`` or a
                dict with remote_addr, path, method, headers)
            custom_data: Caller data exposed as ``ctx.custom_data``

        Returns:
            Response envelope dict, or ``None`` for a routed notification.

        Raises:
            ConnectionTerminatedError: if the session has been terminated.
        """
        if self.terminated:
            raise ConnectionTerminatedError(f"Session {self.session_id} is terminated")

        async with self._lock:
            if self.terminated:
                raise ConnectionTerminatedError(f"Session {self.session_id} is terminated")
            if self.state is ConnectionState.UNINITIALIZED:
                self.state = ConnectionState.NEGOTIATING
            return await self._dispatch(request, transport, custom_data)

    async def _dispatch(
        self,
        request: Union[Mapping[str, Any], JSONRPCRequest],
        transport: Any,
        custom_data: Optional[Mapping[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        if isinstance(request, JSONRPCRequest):
            request = request.model_dump(exclude_none=True)
        logger.debug(f"Session {self.session_id} received request: {request!r}")

        if not isinstance(request, Mapping):
            return make_error(
                None, ErrorCode.INVALID_REQUEST, "Invalid Request: request must be an object"
            )

        request_id = request.get("id")
        if request_id is not None and not validate_request_id(request_id):
            return make_error(
                None, ErrorCode.INVALID_REQUEST, "Invalid Request: id must be a string or integer"
            )
        if request.get("jsonrpc") != JSONRPC_VERSION:
            return make_error(
                request_id, ErrorCode.INVALID_REQUEST, "Invalid Request: JSON-RPC version must be 2.0"
            )

        method = request.get("method")
        if not validate_method_name(method):
            return make_error(
                request_id, ErrorCode.INVALID_REQUEST, "Invalid Request: method not specified"
            )
        if request_id is None and method not in self.notification_methods:
            return make_error(
                None, ErrorCode.INVALID_REQUEST, "Invalid Request: id is required for this method"
            )

        params = request.get("params")
        if params is None:
            params = {}
        elif not isinstance(params, Mapping):
            return make_error(
                request_id, ErrorCode.INVALID_PARAMS, f"Invalid params: params must be an object for {method}"
            )
        params = dict(params)

        ctx = self._context(request_id, transport, custom_data)

        if method == INITIALIZE_METHOD:
            response = await self._initialize(ctx, params)
        else:
            response = await self._route(ctx, method, params)

        if request_id is None:
            logger.debug(f"Session {self.session_id} handled notification {method}")
            return None
        return response

    async def _route(self, ctx: RequestContext, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        route = METHOD_TABLE.get(method)
        if route is None:
            return make_error(ctx.request_id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

        args, missing = route.extract(params)
        if missing:
            return make_error(
                ctx.request_id,
                ErrorCode.INVALID_PARAMS,
                f"Invalid params: missing {' or '.join(route.required)} for {method}",
            )

        operation = getattr(self.handler, route.operation)
        try:
            outcome = await _invoke(operation, ctx, *args, self.handler_state)
        except Exception:
            return self._handler_raised(ctx, method)

        if isinstance(outcome, Success):
            if route.listing and not isinstance(outcome.value, (list, tuple)):
                return self._unexpected_return(ctx, method, outcome)
            self._commit(outcome)
            return success_response(ctx.request_id, method, outcome.value)

        if isinstance(outcome, Failure):
            return self._failure(ctx, method, outcome)

        return self._unexpected_return(ctx, method, outcome)

    async def _initialize(self, ctx: RequestContext, params: Dict[str, Any]) -> Dict[str, Any]:
        """Capability handshake.

        The handler sees a context carrying the capabilities negotiated before
        this call. A repeated ``initialize`` re-negotiates and overwrites them.
        """
        client_capabilities = params.get("capabilities")
        if client_capabilities is None:
            client_capabilities = {}
        elif not isinstance(client_capabilities, Mapping):
            return make_error(
                ctx.request_id,
                ErrorCode.INVALID_PARAMS,
                f"Invalid params: capabilities must be an object for {INITIALIZE_METHOD}",
            )
        client_capabilities = copy.deepcopy(dict(client_capabilities))

        try:
            outcome = await _invoke(
                self.handler.handle_client_capabilities,
                ctx,
                copy.deepcopy(client_capabilities),
                self.handler_state,
            )
        except Exception:
            return self._handler_raised(ctx, INITIALIZE_METHOD)

        if isinstance(outcome, (Success, NoReply)):
            self._commit(outcome)
            renegotiated = self.client_capabilities is not None
            self.client_capabilities = client_capabilities
            self.state = ConnectionState.ACTIVE
            logger.info(
                f"Session {self.session_id} {'re-negotiated' if renegotiated else 'negotiated'} "
                f"client capabilities: {sorted(client_capabilities)}"
            )
            return initialize_response(
                ctx.request_id, copy.deepcopy(self.server_capabilities), self.session_id
            )

        if isinstance(outcome, Failure):
            return self._failure(ctx, INITIALIZE_METHOD, outcome)

        return self._unexpected_return(ctx, INITIALIZE_METHOD, outcome)

    async def handle_sampling_response(
        self,
        request_id: RequestId,
        data: Dict[str, Any],
        transport: Any = None,
    ) -> Optional[Dict[str, Any]]:
        """Hand a client's answer to a server-initiated request to the handler.

        Returns ``None`` when the handler accepted it, otherwise the error
        object (dict) the handler declared or an internal error.
        """
        if self.terminated:
            raise ConnectionTerminatedError(f"Session {self.session_id} is terminated")

        method = "handleSamplingResponse"
        async with self._lock:
            ctx = self._context(request_id, transport)
            try:
                outcome = await _invoke(
                    self.handler.handle_sampling_response, ctx, request_id, data, self.handler_state
                )
            except Exception:
                return self._handler_raised(ctx, method)["error"]

            if isinstance(outcome, (NoReply, Success)):
                self._commit(outcome)
                return None
            if isinstance(outcome, Failure):
                return self._failure(ctx, method, outcome)["error"]
            return self._unexpected_return(ctx, method, outcome)["error"]

    # --- Helpers ---

    def _context(
        self,
        request_id: Optional[RequestId] = None,
        transport: Any = None,
        custom_data: Optional[Mapping[str, Any]] = None,
    ) -> RequestContext:
        return build_context(
            self._session_ref,
            request_id=request_id,
            client_capabilities=self.client_capabilities,
            transport=transport,
            custom_data=custom_data,
        )

    def _commit(self, outcome: Any) -> None:
        if carries_state(outcome):
            self.handler_state = outcome.state

    def _failure(self, ctx: RequestContext, method: str, outcome: Failure) -> Dict[str, Any]:
        try:
            error = (
                outcome.error
                if isinstance(outcome.error, JSONRPCError)
                else JSONRPCError.model_validate(dict(outcome.error), strict=True)
            )
        except (ValidationError, TypeError, ValueError):
            return self._unexpected_return(ctx, method, outcome)
        self._commit(outcome)
        return error_response(ctx.request_id, error)

    def _unexpected_return(self, ctx: RequestContext, method: str, outcome: Any) -> Dict[str, Any]:
        logger.error(f"Unexpected return from handler for {method}: {outcome!r}")
        return make_error(
            ctx.request_id,
            ErrorCode.SERVER_ERROR,
            f"Internal server error: Handler returned unexpected value for {method}",
        )

    def _handler_raised(self, ctx: RequestContext, method: str) -> Dict[str, Any]:
        logger.error(f"Handler raised an error for {method}", exc_info=True)
        return make_error(
            ctx.request_id,
            ErrorCode.SERVER_ERROR,
            f"Internal server error: Handler raised an error for {method}",
        )
