"""JSON-RPC 2.0 models and response formatting for the MCP protocol."""
from .models import JSONRPCRequest, JSONRPCResponse, JSONRPCError, ErrorCode
from .formatter import (
    LIST_RESULT_KEYS,
    error_response,
    initialize_response,
    make_error,
    success_response,
)

__all__ = [
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCError",
    "ErrorCode",
    "LIST_RESULT_KEYS",
    "error_response",
    "initialize_response",
    "make_error",
    "success_response",
]
