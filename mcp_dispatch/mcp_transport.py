"""MCP HTTP transport: decodes requests and hands them to session connections."""
import json
import asyncio
import logging
from typing import Any, Dict, Optional, Set
from fastapi import Request, Response

from .connection import INITIALIZE_METHOD, Connection
from .context import TransportMetadata
from .jsonrpc.formatter import make_error
from .jsonrpc.models import ErrorCode
from .mcp_session import MCPSessionManager
from .utils.errors import ConnectionTerminatedError, SessionCreationError
from .utils.validation import validate_request_id, validate_session_id

logger = logging.getLogger(__name__)

# MCP Protocol Version
MCP_PROTOCOL_VERSION = "2024-11-05"

SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_HEADER = "Mcp-Protocol-Version"


def transport_metadata(request: Request) -> TransportMetadata:
    """Snapshot the HTTP request details a handler may look at."""
    client = request.client
    return TransportMetadata(
        remote_addr=client.host if client else None,
        path=request.url.path,
        method=request.method,
        headers=tuple((name.lower(), value) for name, value in request.headers.items()),
    )


def _log_late_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Timed-out dispatch failed later: {error!r}")
    else:
        logger.info("Timed-out dispatch completed after its response was sent")


class MCPTransport:
    """Handles MCP over HTTP POST."""

    def __init__(
        self,
        session_manager: MCPSessionManager,
        dispatch_timeout: Optional[float] = None,
        stateless_fallback: bool = True,
    ):
        self.session_manager = session_manager
        self.dispatch_timeout = dispatch_timeout
        self.stateless_fallback = stateless_fallback
        self._closing: Set[asyncio.Task] = set()

    async def handle_post_request(self, request: Request) -> Response:
        """Handle POST request from client.

        ``initialize`` without a session header opens a new session. Other
        requests use the session named by ``Mcp-Session-Id``; without one they
        are served by a one-off connection when the stateless fallback is on.
        """
        body = await request.body()
        try:
            message = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return self._json(make_error(None, ErrorCode.PARSE_ERROR, "Parse error"))

        if not isinstance(message, dict):
            # Batches are not supported.
            return self._json(make_error(None, ErrorCode.INVALID_REQUEST, "Invalid Request"))

        request_id = message.get("id")
        if not validate_request_id(request_id):
            request_id = None

        # Validate protocol version
        protocol_version = request.headers.get(PROTOCOL_HEADER)
        if protocol_version and protocol_version != MCP_PROTOCOL_VERSION:
            logger.warning(f"Client protocol version mismatch: {protocol_version}")

        metadata = transport_metadata(request)
        session_id = request.headers.get(SESSION_HEADER)

        if session_id:
            if not validate_session_id(session_id):
                return self._json(
                    make_error(request_id, ErrorCode.INVALID_REQUEST, "Invalid session id"),
                    status_code=400,
                )
            session = self.session_manager.get_session(session_id)
            if not session:
                logger.warning(f"Session not found: {session_id}")
                return self._json(
                    make_error(request_id, ErrorCode.SERVER_ERROR, f"Session not found: {session_id}"),
                    status_code=404,
                )
            if "method" not in message and ("result" in message or "error" in message):
                return await self._sampling_response(session.connection, message, metadata)
            return await self._dispatch(session.connection, message, metadata, session_id)

        if message.get("method") == INITIALIZE_METHOD:
            try:
                session = await self.session_manager.create_session()
            except SessionCreationError:
                return self._session_creation_failed(request_id)
            return await self._dispatch(session.connection, message, metadata, session.session_id)

        if not self.stateless_fallback:
            return self._json(
                make_error(request_id, ErrorCode.INVALID_REQUEST, f"Missing {SESSION_HEADER} header"),
                status_code=400,
            )

        # No session correlation: serve the call with a one-off connection.
        try:
            connection = await self.session_manager.open_connection()
        except SessionCreationError:
            return self._session_creation_failed(request_id)
        try:
            return await self._dispatch(connection, message, metadata, None)
        finally:
            if connection.busy:
                # A timed-out dispatch still holds the connection; close it
                # once that finishes instead of holding the response.
                self._close_later(connection)
            else:
                await connection.terminate()

    async def handle_delete_request(self, request: Request) -> Response:
        """Terminate the session named by the ``Mcp-Session-Id`` header."""
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return self._json(
                make_error(None, ErrorCode.INVALID_REQUEST, f"Missing {SESSION_HEADER} header"),
                status_code=400,
            )
        if not await self.session_manager.delete_session(session_id, reason="client_closed"):
            return self._json(
                make_error(None, ErrorCode.SERVER_ERROR, f"Session not found: {session_id}"),
                status_code=404,
            )
        return Response(status_code=204, headers=self._headers(None))

    async def _dispatch(
        self,
        connection: Connection,
        message: Dict[str, Any],
        metadata: TransportMetadata,
        session_id: Optional[str],
    ) -> Response:
        request_id = message.get("id") if validate_request_id(message.get("id")) else None
        try:
            payload = await self._with_timeout(connection.dispatch(message, metadata))
        except asyncio.TimeoutError:
            logger.error(
                f"Dispatch of {message.get('method')!r} timed out after {self.dispatch_timeout}s"
            )
            payload = make_error(
                request_id, ErrorCode.SERVER_ERROR, "Internal server error: request timed out"
            )
        except ConnectionTerminatedError:
            return self._json(
                make_error(request_id, ErrorCode.SERVER_ERROR, f"Session terminated: {session_id}"),
                status_code=404,
            )

        if payload is None:
            # Notification: nothing to correlate.
            return Response(status_code=202, headers=self._headers(session_id))
        return self._json(payload, session_id=session_id)

    async def _sampling_response(
        self, connection: Connection, message: Dict[str, Any], metadata: TransportMetadata
    ) -> Response:
        data = {key: message[key] for key in ("result", "error") if key in message}
        error = await connection.handle_sampling_response(message.get("id"), data, metadata)
        if error is not None:
            logger.warning(f"Handler rejected client response {message.get('id')!r}: {error}")
        return Response(status_code=202, headers=self._headers(connection.session_id))

    async def _with_timeout(self, coro):
        if self.dispatch_timeout is None:
            return await coro
        # The dispatch keeps running past the deadline so session state stays
        # consistent; only this call is reported as failed.
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.dispatch_timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_log_late_result)
            raise

    def _close_later(self, connection: Connection) -> None:
        task = asyncio.ensure_future(connection.terminate())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _session_creation_failed(self, request_id: Any) -> Response:
        return self._json(
            make_error(request_id, ErrorCode.SERVER_ERROR, "Internal server error: session creation failed"),
            status_code=500,
        )

    def _headers(self, session_id: Optional[str]) -> Dict[str, str]:
        headers = {PROTOCOL_HEADER: MCP_PROTOCOL_VERSION}
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    def _json(
        self, payload: Dict[str, Any], status_code: int = 200, session_id: Optional[str] = None
    ) -> Response:
        try:
            content = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"Response is not JSON serializable: {e}")
            content = json.dumps(make_error(
                payload.get("id"), ErrorCode.SERVER_ERROR, "Internal server error: unserializable result"
            ))
        return Response(
            content=content,
            status_code=status_code,
            media_type="application/json",
            headers=self._headers(session_id),
        )

    def start_cleanup(self):
        """Start background cleanup of expired sessions."""
        self.session_manager.start_background_cleanup()

    async def shutdown(self):
        """Stop cleanup and terminate all sessions."""
        await self.session_manager.shutdown()
