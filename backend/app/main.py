"""Roomcast Backend Application.

This is the main entry point for the Roomcast backend service.
Roomcast is a real-time chat core: durable, strictly ordered per-room
message logs with live fan-out, catch-up after reconnect, and presence.

Modules:
    - chat: WebSocket message channel, room store, presence and catch-up
    - files: Attachment blob store (uploads referenced by URL)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.chat.manager import ChatManager, set_manager
from app.chat.repository import (
    DuckDBMessageRepository,
    InMemoryMessageRepository,
    MessageRepository,
)
from app.chat.router import router as chat_router
from app.config import AppConfig, get_config
from app.files.router import router as files_router
from app.files.service import LocalBlobStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("httpx", "httpcore", "multipart", "python_multipart"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_repository(config: AppConfig) -> MessageRepository:
    """Create the message repository selected by ``storage.backend``."""
    if config.storage.backend == "memory":
        logger.info("Using in-memory message storage (not durable across restarts)")
        return InMemoryMessageRepository()
    logger.info(f"Using DuckDB message storage at {config.storage.db_path}")
    return DuckDBMessageRepository(db_path=config.storage.db_path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomcast.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    manager = ChatManager(build_repository(config), config.chat)
    await manager.start()
    set_manager(manager)
    logger.info(
        f"Chat core ready on http://{config.server.host}:{config.server.port} "
        f"(retention={config.chat.retention_limit}, grace={config.chat.grace_period_seconds}s)"
    )

    yield  # Application runs here

    # Shutdown
    set_manager(None)
    await manager.stop()
    LocalBlobStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Roomcast API",
    description="Real-time chat core: ordered room logs, catch-up and presence",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
