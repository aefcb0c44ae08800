"""FastAPI server exposing an MCP handler over HTTP."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from .config import Settings, load_handler_class
from .mcp_session import HandlerFactory, MCPSessionManager
from .mcp_transport import MCP_PROTOCOL_VERSION, MCPTransport
from .registry import CapabilityRegistry, RegistryHandler

logger = logging.getLogger(__name__)

SERVICE_NAME = "mcp-dispatch"
SERVICE_VERSION = "0.1.0"

# Shared by every session of the default registry-backed handler.
registry = CapabilityRegistry()


def default_handler_factory(settings: Settings) -> HandlerFactory:
    """Resolve the configured handler class into a per-session factory."""
    handler_class = load_handler_class(settings.handler)
    if issubclass(handler_class, RegistryHandler):
        return lambda: handler_class(registry)
    return handler_class


def create_app(
    settings: Optional[Settings] = None,
    handler_factory: Optional[HandlerFactory] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Server settings (read from the environment when omitted)
        handler_factory: Callable returning a new handler per session
            (defaults to the class named by ``settings.handler``)
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    session_manager = MCPSessionManager(
        handler_factory or default_handler_factory(settings),
        handler_options=settings.handler_options,
        notification_methods=settings.notification_methods,
        session_timeout_minutes=settings.session_timeout_minutes,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
    )
    mcp_transport = MCPTransport(
        session_manager,
        dispatch_timeout=settings.dispatch_timeout_seconds,
        stateless_fallback=settings.stateless_fallback,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI app."""
        logger.info("Starting MCP server...")
        mcp_transport.start_cleanup()
        logger.info("MCP session cleanup task started")
        yield
        logger.info("Shutting down MCP server...")
        await mcp_transport.shutdown()

    app = FastAPI(
        title="MCP Dispatch Server",
        description="MCP server dispatching JSON-RPC requests to a pluggable handler",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_manager = session_manager
    app.state.mcp_transport = mcp_transport

    @app.post("/mcp")
    async def mcp_post_endpoint(request: Request):
        """MCP POST endpoint: one JSON-RPC message per request."""
        return await mcp_transport.handle_post_request(request)

    @app.delete("/mcp")
    async def mcp_delete_endpoint(request: Request):
        """Terminate the session named by Mcp-Session-Id."""
        return await mcp_transport.handle_delete_request(request)

    @app.api_route("/mcp", methods=["GET", "PUT", "PATCH"])
    async def mcp_method_not_allowed(request: Request) -> Response:
        return PlainTextResponse(
            "Method Not Allowed. Only POST is supported for MCP.",
            status_code=405,
            headers={"Allow": "POST, DELETE"},
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "protocol_version": MCP_PROTOCOL_VERSION,
            "sessions": len(session_manager.sessions),
        }

    return app


app = create_app()
