"""Input validation utilities."""
import re
from typing import Any

# Session ids travel in an HTTP header and must be visible ASCII only.
VALID_SESSION_ID = re.compile(r"[\x21-\x7E]+")


def validate_session_id(session_id: str) -> bool:
    """Validate a session id received from a client."""
    return bool(VALID_SESSION_ID.fullmatch(session_id))


def validate_request_id(request_id: Any) -> bool:
    """Validate a JSON-RPC request id.

    Ids must be strings or integers. ``bool`` is rejected even though it is an
    ``int`` subclass.
    """
    if isinstance(request_id, bool):
        return False
    return isinstance(request_id, (str, int))


def validate_method_name(method: Any) -> bool:
    """Validate that a JSON-RPC method name is a non-empty string."""
    return isinstance(method, str) and bool(method)
