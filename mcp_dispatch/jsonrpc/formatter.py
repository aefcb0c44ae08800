"""Map dispatch outcomes to JSON-RPC 2.0 response envelopes.

Everything in this module is a pure function: it receives the request id,
the routed method name and the handler's value (or error object) and returns
a dict ready to be encoded by the transport.
"""
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from .models import JSONRPCError, JSONRPCResponse, RequestId

# Listing methods nest the handler's sequence under a collection key.
LIST_RESULT_KEYS: Dict[str, str] = {
    "listResources": "resources",
    "listPrompts": "prompts",
    "listTools": "tools",
}


def to_jsonable(value: Any) -> Any:
    """Dump pydantic models (top level or inside a list) to plain dicts."""
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def success_response(
    request_id: Optional[RequestId], method: str, value: Any
) -> Dict[str, Any]:
    """Build a success envelope for a routed method."""
    key = LIST_RESULT_KEYS.get(method)
    if key is not None:
        result = {key: to_jsonable(list(value))}
    else:
        result = to_jsonable(value)
    return JSONRPCResponse(id=request_id, result=result).to_payload()


def error_response(
    request_id: Optional[RequestId],
    error: Union[JSONRPCError, Mapping[str, Any]],
) -> Dict[str, Any]:
    """Build an error envelope, passing the error object through."""
    if not isinstance(error, JSONRPCError):
        error = JSONRPCError.model_validate(dict(error))
    return JSONRPCResponse(id=request_id, error=error).to_payload()


def make_error(
    request_id: Optional[RequestId], code: int, message: str, data: Any = None
) -> Dict[str, Any]:
    """Shortcut for errors produced by the dispatch engine itself."""
    return error_response(request_id, JSONRPCError(code=code, message=message, data=data))


def initialize_response(
    request_id: Optional[RequestId],
    server_capabilities: Dict[str, Any],
    session_id: Optional[str],
) -> Dict[str, Any]:
    """Build the handshake result, which never goes through the generic wrapper."""
    result = {
        "serverCapabilities": server_capabilities,
        "sessionId": session_id,
    }
    return JSONRPCResponse(id=request_id, result=result).to_payload()
