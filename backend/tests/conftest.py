"""Shared test fixtures and configuration for backend tests."""
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.chat.manager import ChatManager, set_manager
from app.chat.repository import InMemoryMessageRepository
from app.config import (
    AppConfig,
    ChatSettings,
    FileSettings,
    StorageSettings,
    set_config,
)
from app.files.service import LocalBlobStore
from app.main import app


class FakeTransport:
    """Stands in for a WebSocket in manager-level tests."""

    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, payload):
        self.sent.append(payload)

    async def close(self, code=1000):
        self.closed_with = code


def fast_chat_settings(**overrides) -> ChatSettings:
    """Chat settings with the send rate limit disabled."""
    values = {"min_send_interval_seconds": 0.0, "grace_period_seconds": 0.05}
    values.update(overrides)
    return ChatSettings(**values)


@pytest.fixture
def test_config(tmp_path):
    """In-memory storage and a temporary upload directory."""
    config = AppConfig(
        chat=fast_chat_settings(grace_period_seconds=45.0),
        storage=StorageSettings(backend="memory"),
        files=FileSettings(upload_dir=str(tmp_path / "uploads")),
    )
    set_config(config)
    LocalBlobStore.reset_instance()
    yield config
    LocalBlobStore.reset_instance()
    set_config(None)


@pytest.fixture
def api_client(test_config):
    """Provide a TestClient for the main FastAPI app with lifespan running.

    Named api_client (not client) to avoid shadowing the module-level
    `client = TestClient(app)` pattern used in other test files.
    """
    with TestClient(app) as client:
        yield client
    set_manager(None)


@pytest_asyncio.fixture
async def chat_manager():
    """A ChatManager over an in-memory repository (reaper not started)."""
    manager = ChatManager(InMemoryMessageRepository(), fast_chat_settings())
    yield manager
    await manager.stop()


@pytest.fixture
def transport_factory():
    return FakeTransport
