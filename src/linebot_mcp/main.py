import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from . import __version__
from .errors import NoSuchSession, ProtocolError
from .services.coordinator import ConnectionCoordinator, Disposition
from .services.line_client import LineMessagingClient, get_line_client
from .services.session_table import SessionTable
from .settings import Settings, get_settings
from .tools import build_line_registry

SSE_ENDPOINT = "/sse"
MESSAGE_ENDPOINT = "/messages"


def setup_server_logging(settings: Settings) -> logging.Logger:
    """Configure and return the package logger.

    The level and the log file always follow `settings`; a file handler for a
    different log_dir is replaced rather than added alongside.
    """
    logger = logging.getLogger("linebot_mcp")
    logger.setLevel(settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        logger.addHandler(ch)

    log_file = (settings.log_dir / "server.log").resolve()
    for h in list(logger.handlers):
        if isinstance(h, RotatingFileHandler):
            if Path(h.baseFilename) == log_file:
                return logger
            logger.removeHandler(h)
            h.close()

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    fh = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = logging.getLogger("linebot_mcp.server")


def build_coordinator(settings: Settings, client: LineMessagingClient) -> ConnectionCoordinator:
    """Wire the session table and LINE tool registry into a coordinator."""
    registry = build_line_registry(client, settings.destination_user_id)
    return ConnectionCoordinator(
        SessionTable(),
        registry,
        completion_timeout=settings.completion_timeout_seconds,
        message_endpoint=MESSAGE_ENDPOINT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the coordinator at startup (unless injected); close every session on shutdown."""
    settings: Settings = app.state.settings
    LOGGER.info("Starting LINE Bot MCP Server v%s", __version__)
    for name in settings.missing_credentials():
        LOGGER.warning("%s is not set. Some functionality may not work properly.", name)

    client: Optional[LineMessagingClient] = None
    if app.state.coordinator is None:
        LOGGER.info("Initializing LINE Messaging API client")
        client = get_line_client(settings)
        app.state.coordinator = build_coordinator(settings, client)

    LOGGER.info("Health check: http://%s:%s/health", settings.host, settings.port)
    LOGGER.info("MCP Server SSE endpoint: http://%s:%s%s", settings.host, settings.port, SSE_ENDPOINT)

    yield

    LOGGER.info("Shutting down...")
    await app.state.coordinator.shutdown()
    if client is not None:
        await client.aclose()


def get_coordinator(request: Request) -> ConnectionCoordinator:
    coordinator = request.app.state.coordinator
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Server is not ready")
    return coordinator


_DISPOSITION_STATUS = {
    Disposition.ACCEPTED: 202,
    Disposition.COMPLETED: 200,
    Disposition.BUSY: 409,
    Disposition.CLOSED: 410,
    Disposition.TIMED_OUT: 500,
    Disposition.FAILED: 500,
}


WELCOME_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <title>LINE Bot MCP Server</title>
    <style>
      body {{ font-family: Arial, sans-serif; margin: 40px; line-height: 1.6; }}
      h1 {{ color: #2c3e50; }}
      .info {{ background: #f8f9fa; padding: 20px; border-radius: 5px; }}
    </style>
  </head>
  <body>
    <h1>LINE Bot MCP Server</h1>
    <div class="info">
      <p>This server is running the LINE Bot MCP Server and is ready to accept MCP connections.</p>
      <p>Server version: {version}</p>
      <p>Connect to the MCP endpoint at: <code>{endpoint}</code></p>
    </div>
  </body>
</html>
"""


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[ConnectionCoordinator] = None,
) -> FastAPI:
    """Build the FastAPI app. A pre-built coordinator skips lifespan wiring."""
    settings = settings or get_settings()
    setup_server_logging(settings)

    app = FastAPI(
        title="LINE Bot MCP Server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check.

        Returns:
            dict[str, Any]: JSON response with status and server version.
        """
        LOGGER.debug("Health check requested")
        return {"status": "ok", "version": __version__}

    @app.get("/", response_class=HTMLResponse)
    async def welcome() -> str:
        LOGGER.debug("Welcome page requested")
        return WELCOME_PAGE.format(version=__version__, endpoint=SSE_ENDPOINT)

    @app.get(SSE_ENDPOINT)
    async def sse(
        request: Request,
        coordinator: ConnectionCoordinator = Depends(get_coordinator),
    ) -> EventSourceResponse:
        """Open the long-lived channel.

        The first event is ``endpoint`` carrying the URL to POST messages to;
        tool results and other replies follow as ``message`` events.
        """
        client_ip = request.headers.get("x-forwarded-for") or (
            request.client.host if request.client else "unknown"
        )
        LOGGER.info("New SSE connection from %s", client_ip)
        session_id, channel = coordinator.open_session()

        async def event_stream():
            try:
                async for event in channel.events():
                    yield event
            finally:
                coordinator.close_session(session_id)

        async def on_close() -> None:
            # covers a disconnect before the stream was ever iterated
            coordinator.close_session(session_id)

        return EventSourceResponse(
            event_stream(),
            ping=settings.sse_ping_seconds,
            background=BackgroundTask(on_close),
        )

    @app.post(MESSAGE_ENDPOINT)
    async def messages(
        request: Request,
        sessionId: Optional[str] = None,
        session: Optional[str] = None,
        coordinator: ConnectionCoordinator = Depends(get_coordinator),
    ) -> JSONResponse:
        """Accept one message for a session.

        Tool calls are held until their result has been pushed to the channel.
        """
        session_id = sessionId or session
        LOGGER.debug("Message received for sessionId: %s", session_id)
        body = await request.body()

        try:
            disposition = await coordinator.handle_message(session_id, body)
        except NoSuchSession:
            LOGGER.warning("No transport found for sessionId: %s", session_id)
            raise HTTPException(status_code=400, detail="No transport found for sessionId")
        except ProtocolError as e:
            LOGGER.warning("Invalid message for sessionId %s: %s", session_id, e)
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            LOGGER.exception("Error processing message for sessionId: %s", session_id)
            raise HTTPException(status_code=500, detail="Error processing message")

        status_code = _DISPOSITION_STATUS[disposition]
        if status_code >= 500:
            LOGGER.error("Message for sessionId %s ended as %s", session_id, disposition.value)
        return JSONResponse(
            {"status": disposition.value, "sessionId": session_id},
            status_code=status_code,
        )

    return app


app = create_app()


def main() -> None:
    """Run the server with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
