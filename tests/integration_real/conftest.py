"""
Fixtures for real-service integration tests.

All tests in this directory are automatically skipped when RabbitMQ or
PostgreSQL are not reachable, so the suite never fails on a machine that
hasn't run `docker-compose up -d`. When the services ARE running, the
tests execute against real infrastructure and verify actual AMQP/SQL
behaviour that the in-memory broker only models.
"""

import uuid

import pika
import pika.exceptions
import psycopg2
import pytest

from infra.rabbitmq import RabbitMQBroker
from infra.store import PostgreSQLStore
from minibroker.config import load_settings

SETTINGS = load_settings()


# ------------------------------------------------------------------
# Service availability, checked once at module import
# ------------------------------------------------------------------


def _rabbitmq_available() -> bool:
    params = pika.URLParameters(SETTINGS.amqp_url)
    params.heartbeat = 0
    params.blocked_connection_timeout = 2
    params.connection_attempts = 1
    try:
        pika.BlockingConnection(params).close()
        return True
    except pika.exceptions.AMQPError:
        return False


def _postgres_available() -> bool:
    try:
        conn = psycopg2.connect(
            host=SETTINGS.postgres_host,
            port=SETTINGS.postgres_port,
            dbname=SETTINGS.postgres_db,
            user=SETTINGS.postgres_user,
            password=SETTINGS.postgres_password,
            connect_timeout=2,
        )
        conn.close()
        return True
    except psycopg2.OperationalError:
        return False


_RABBITMQ_UP = _rabbitmq_available()
_POSTGRES_UP = _postgres_available()


# ------------------------------------------------------------------
# Per-test fixtures
# ------------------------------------------------------------------


@pytest.fixture
def real_broker():
    """Connected RabbitMQBroker; queues created through `scratch_queue` are deleted afterwards."""
    if not _RABBITMQ_UP:
        pytest.skip("RabbitMQ not available. Start it with: docker-compose up -d")
    broker = RabbitMQBroker(SETTINGS)
    broker.connect()
    yield broker
    broker.close()


@pytest.fixture
def scratch_queue(real_broker):
    """Factory for uniquely named queues that are removed after the test."""
    created = []

    def _make(prefix: str = "it") -> str:
        name = real_broker.declare_queue(f"{prefix}_{uuid.uuid4().hex[:8]}")
        created.append(name)
        return name

    yield _make
    for name in created:
        real_broker.delete_queue(name)


@pytest.fixture
def real_store():
    """Connected PostgreSQLStore with every broker_* table cleared before and after."""
    if not _POSTGRES_UP:
        pytest.skip("PostgreSQL not available. Start it with: docker-compose up -d")
    store = PostgreSQLStore(SETTINGS)
    store.connect()
    store.clear()
    yield store
    store.clear()
    store.close()
