"""MCP session management: one persistent Connection per logical session."""
import asyncio
import uuid
import logging
from typing import Any, Callable, Dict, Iterable, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .connection import Connection
from .mcp_handler import MCPHandler
from .utils.errors import SessionNotFoundError

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[], MCPHandler]


@dataclass
class MCPSession:
    """Represents an active MCP session."""
    session_id: str
    connection: Connection
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)

    def touch(self) -> None:
        self.last_activity = datetime.now()


class MCPSessionManager:
    """Creates, looks up and tears down MCP sessions.

    Every session gets its own handler instance from ``handler_factory`` and
    its own ``Connection``. Sessions are terminated when deleted, when idle
    longer than ``session_timeout_minutes`` and on ``shutdown``.
    """

    def __init__(
        self,
        handler_factory: HandlerFactory,
        handler_options: Optional[Dict[str, Any]] = None,
        notification_methods: Iterable[str] = (),
        session_timeout_minutes: int = 30,
        cleanup_interval_seconds: float = 300.0,
    ):
        self.handler_factory = handler_factory
        self.handler_options = dict(handler_options or {})
        self.notification_methods = frozenset(notification_methods)
        self.sessions: Dict[str, MCPSession] = {}
        self.session_timeout = timedelta(minutes=session_timeout_minutes)
        self.cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None

    async def open_connection(self, session_id: Optional[str] = None) -> Connection:
        """Start a Connection with a fresh handler instance.

        Raises:
            SessionCreationError: if the handler refuses the session.
        """
        return await Connection.start(
            self.handler_factory(),
            self.handler_options,
            session_id=session_id,
            notification_methods=self.notification_methods,
        )

    async def create_session(self) -> MCPSession:
        """Create a new MCP session."""
        session_id = uuid.uuid4().hex
        connection = await self.open_connection(session_id)
        session = MCPSession(session_id=session_id, connection=connection)
        self.sessions[session_id] = session
        logger.info(f"Created MCP session: {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[MCPSession]:
        """Get an existing session by ID."""
        session = self.sessions.get(session_id)
        if session:
            session.touch()
        return session

    def require_session(self, session_id: str) -> MCPSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    async def delete_session(self, session_id: str, reason: Any = "normal") -> bool:
        """Terminate and forget a session. Returns False if it did not exist."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.connection.terminate(reason)
        logger.info(f"Deleted MCP session: {session_id}")
        return True

    async def cleanup_expired_sessions(self):
        """Remove sessions that have been inactive for too long."""
        now = datetime.now()
        expired = [
            sid for sid, session in self.sessions.items()
            if now - session.last_activity > self.session_timeout
        ]
        for session_id in expired:
            await self.delete_session(session_id, reason="expired")
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")

    async def start_cleanup_task(self):
        """Periodically clean up expired sessions."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired_sessions()
            except Exception:
                logger.error("Session cleanup failed", exc_info=True)

    def start_background_cleanup(self):
        """Start cleanup task in background."""
        if not self._cleanup_task:
            self._cleanup_task = asyncio.create_task(self.start_cleanup_task())

    def stop_background_cleanup(self):
        """Stop cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def shutdown(self) -> None:
        """Stop cleanup and terminate every live session."""
        self.stop_background_cleanup()
        for session_id in list(self.sessions):
            await self.delete_session(session_id, reason="shutdown")
