"""
Root-level fixtures shared across all test categories.

Scope is function by default so every test starts with a fully isolated
in-memory broker and Flask client; no shared state between tests.
"""

import pytest

from minibroker.broker import Connection, InMemoryBroker
from minibroker.monitor import create_app
from minibroker.store import MemoryStore

TEST_TOKENS = {"test-token", "valid-token"}


@pytest.fixture
def broker() -> InMemoryBroker:
    """Fresh in-memory broker for each test."""
    return InMemoryBroker()


@pytest.fixture
def store() -> MemoryStore:
    """In-process durable store; outlives the brokers built on it."""
    return MemoryStore()


@pytest.fixture
def connection(broker: InMemoryBroker) -> Connection:
    conn = broker.open_connection()
    yield conn
    conn.close()


@pytest.fixture
def no_sleep():
    """Recording stand-in for asyncio.sleep; requested delays land in no_sleep.calls."""
    calls = []

    async def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def flask_app(broker: InMemoryBroker):
    """Monitoring application wired to the shared broker."""
    app = create_app(broker, TEST_TOKENS)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(flask_app):
    """Flask test client for the monitoring API."""
    return flask_app.test_client()
