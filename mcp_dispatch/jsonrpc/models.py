"""JSON-RPC 2.0 request/response models."""
from pydantic import BaseModel, ConfigDict, model_validator
from typing import Any, Dict, Optional, Union, Literal

JSONRPC_VERSION = "2.0"

RequestId = Union[str, int]


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request model."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[dict] = None
    id: Optional[RequestId] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error model.

    Extra fields supplied by a handler are kept so that handler-declared
    errors reach the client unchanged.
    """

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response model.

    Exactly one of ``result`` and ``error`` is present in the payload. A
    ``None`` result is a valid success value, so presence is tracked through
    the fields that were explicitly set.
    """

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[RequestId] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    @model_validator(mode="after")
    def _check_result_or_error(self) -> "JSONRPCResponse":
        has_result = "result" in self.model_fields_set
        has_error = self.error is not None
        if has_result == has_error:
            raise ValueError("response must carry exactly one of result or error")
        return self

    def to_payload(self) -> Dict[str, Any]:
        """Build the wire dict, keeping ``id`` even when it is null."""
        payload: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error.model_dump(exclude_none=True)
        else:
            payload["result"] = self.result
        return payload


class ErrorCode:
    """JSON-RPC 2.0 standard error codes and custom application codes."""

    # Standard JSON-RPC 2.0 error codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SERVER_ERROR = -32000

    # Custom application error codes (registry handler)
    TOOL_NOT_FOUND = -32001
    TOOL_EXECUTION_ERROR = -32002
    RESOURCE_NOT_FOUND = -32003
    PROMPT_NOT_FOUND = -32004
    RESOURCE_READ_ERROR = -32005
    PROMPT_RENDER_ERROR = -32006
