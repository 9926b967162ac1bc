"""Parley Backend Application.

Main entry point for the Parley real-time chat service: rooms, messages
and live updates over HTTP and WebSocket.

Modules:
    - chat: rooms, messages, pagination and live sessions
    - directory: user identities and online presence
    - envelope: encrypted request/response envelope
    - auth: bearer token verification
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley.auth.service import build_verifier
from parley.chat.manager import SessionManager
from parley.chat.messages import MessageStore
from parley.chat.router import router as rooms_router
from parley.chat.service import ChatOrchestrator
from parley.chat.store import ChatStore
from parley.chat.websocket import router as websocket_router
from parley.config import AppSettings, get_config
from parley.database import Database
from parley.directory.service import UserDirectory
from parley.envelope import EnvelopeCipher, EnvelopeRoute, register_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection made by the remote verifier.
for _noisy in ("httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

health_router = APIRouter(route_class=EnvelopeRoute)


@health_router.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def build_services(app: FastAPI, settings: AppSettings, db: Optional[Database] = None) -> None:
    """Compose the chat core and attach it to ``app.state``."""
    db = db or Database(settings.database.path)
    timeout = settings.database.operation_timeout_seconds

    cipher = EnvelopeCipher(settings.secrets.encryption.secret_key)
    directory = UserDirectory(db)
    chats = ChatStore(db)
    messages = MessageStore(db, chats)
    orchestrator = ChatOrchestrator(directory, chats, messages, settings.chat)
    sessions = SessionManager(orchestrator, directory, timeout=timeout)
    orchestrator.add_listener(sessions)

    app.state.settings = settings
    app.state.db = db
    app.state.cipher = cipher
    app.state.directory = directory
    app.state.chats = chats
    app.state.messages = messages
    app.state.orchestrator = orchestrator
    app.state.sessions = sessions
    app.state.verifier = build_verifier(settings, directory, cipher)


def create_app(settings: Optional[AppSettings] = None, db: Optional[Database] = None) -> FastAPI:
    """Build the FastAPI application.

    Services are built on startup, so ``app.state`` is populated once the
    lifespan has started (``with TestClient(app)`` in tests).

    Args:
        settings: Settings to use; defaults to :func:`get_config`.
        db: Pre-built database (tests pass an in-memory one).
    """
    settings = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to the root logger
        configured_level = getattr(logging, settings.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", settings.logging.level.upper())

        build_services(app, settings, db)
        logger.info(
            "Parley running on http://%s:%s (auth=%s)",
            settings.server.host, settings.server.port, settings.auth.mode,
        )

        yield  # Application runs here

        # Shutdown
        app.state.db.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Parley API",
        description="Real-time chat backend with encrypted transport",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(rooms_router)
    app.include_router(websocket_router)
    return app


app = create_app()
