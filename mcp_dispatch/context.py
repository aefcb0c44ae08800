"""Per-call request context passed to handler operations."""
import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TYPE_CHECKING

from .jsonrpc.models import RequestId

if TYPE_CHECKING:
    from .connection import Connection

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class SessionRef:
    """Non-owning handle back to the session that built a context.

    Holds the session id and a lookup callable. ``resolve()`` returns the
    live ``Connection`` or ``None`` once the session is gone, so a context
    kept past its call never keeps the session alive.
    """

    session_id: Optional[str]
    _lookup: Callable[[], Optional["Connection"]] = field(
        default=lambda: None, repr=False, compare=False
    )

    def resolve(self) -> Optional["Connection"]:
        return self._lookup()


@dataclass(frozen=True)
class TransportMetadata:
    """Flat snapshot of the transport request: copied values only."""

    remote_addr: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    headers: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_mapping(cls, details: Optional[Mapping[str, Any]]) -> Optional["TransportMetadata"]:
        """Build a snapshot from a plain dict of transport details.

        Header values are copied as strings; header names are lower-cased.
        """
        if details is None:
            return None
        if isinstance(details, TransportMetadata):
            return details

        raw_headers = details.get("headers") or ()
        if isinstance(raw_headers, Mapping):
            raw_headers = raw_headers.items()
        headers = tuple((str(name).lower(), str(value)) for name, value in raw_headers)

        remote_addr = details.get("remote_addr")
        return cls(
            remote_addr=str(remote_addr) if remote_addr is not None else None,
            path=details.get("path"),
            method=details.get("method"),
            headers=headers,
        )

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the first value of a header, case-insensitively."""
        wanted = name.lower()
        for header_name, value in self.headers:
            if header_name == wanted:
                return value
        return default


@dataclass(frozen=True)
class RequestContext:
    """Immutable value describing one inbound call.

    Built fresh by the connection for every dispatch and never mutated.
    ``client_capabilities`` is a read-only snapshot (``None`` before the
    initialize handshake) and ``custom_data`` is an open slot for data the
    caller of ``Connection.dispatch`` wants to hand to the handler.
    """

    session: SessionRef
    request_id: Optional[RequestId] = None
    client_capabilities: Optional[Mapping[str, Any]] = None
    transport: Optional[TransportMetadata] = None
    custom_data: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id


def build_context(
    session: SessionRef,
    request_id: Optional[RequestId] = None,
    client_capabilities: Optional[Dict[str, Any]] = None,
    transport: Any = None,
    custom_data: Optional[Mapping[str, Any]] = None,
) -> RequestContext:
    """Snapshot session and transport data into a new ``RequestContext``."""
    snapshot = None
    if client_capabilities is not None:
        snapshot = MappingProxyType(copy.deepcopy(dict(client_capabilities)))

    return RequestContext(
        session=session,
        request_id=request_id,
        client_capabilities=snapshot,
        transport=TransportMetadata.from_mapping(transport),
        custom_data=MappingProxyType(dict(custom_data)) if custom_data else _EMPTY,
    )
