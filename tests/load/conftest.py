"""
Fixtures for the load test suite (tests/load/).

This conftest.py is picked up when tests are run explicitly:
    pytest tests/load/ -v -s

It is NOT auto-collected during a plain `pytest` run because pytest.ini
sets `norecursedirs = tests/load`.

Subscription order follows the same rule as tests/integration/conftest.py:
consumers bind their queues before anything is published.
"""

import types

import pytest

from minibroker.broker import InMemoryBroker
from minibroker.monitor import create_app
from scenarios.orders import OrderPublisher
from scenarios.roles import AnalyticsService, EmailService, FulfillmentCenter, InventoryService, OrderProcessor
from scenarios.topologies import REGIONS


@pytest.fixture
def broker():
    """Fresh InMemoryBroker for each test."""
    return InMemoryBroker()


@pytest.fixture
def ecommerce(broker, no_sleep):
    """
    E-commerce system with four competing processors.

    Returns a SimpleNamespace with attributes:
        broker, processors, notifications, centres, publisher, client
    """
    processors = [OrderProcessor(broker.open_connection(), sleep=no_sleep) for _ in range(4)]
    notifications = [
        InventoryService(broker, sleep=no_sleep),
        EmailService(broker, sleep=no_sleep),
        AnalyticsService(broker, sleep=no_sleep),
    ]
    centres = [FulfillmentCenter(broker, region, sleep=no_sleep) for region in REGIONS]
    app = create_app(broker, {"test-token"})
    app.config["TESTING"] = True
    return types.SimpleNamespace(
        broker=broker,
        processors=processors,
        notifications=notifications,
        centres=centres,
        publisher=OrderPublisher(broker),
        client=app.test_client(),
    )
