"""
Integration-test fixtures: fully wired scenarios on one broker.

Construction order matters: notification services and fulfillment centres
must bind their queues before any order is placed, otherwise the fanout and
direct copies have nowhere to go and are dropped. Every role runs on its
own connection, as separate processes would.
"""

import types

import pytest

from minibroker.broker import InMemoryBroker
from scenarios.marketplace import MarketplacePublisher, MarketplaceService
from scenarios.orders import OrderPublisher
from scenarios.pipeline import AIService, ImageService, SEOService, SyncService
from scenarios.roles import AnalyticsService, EmailService, FulfillmentCenter, InventoryService, OrderProcessor
from scenarios.topologies import MARKETPLACES, REGIONS, declare_pipeline_events


@pytest.fixture
def ecommerce(broker: InMemoryBroker, client, no_sleep):
    """
    E-commerce system: two competing processors, the three notification
    services and one fulfillment centre per region, plus the monitor client.
    """
    connections = []

    def conn():
        c = broker.open_connection()
        connections.append(c)
        return c

    processors = [OrderProcessor(conn(), sleep=no_sleep) for _ in range(2)]
    inventory = InventoryService(conn(), sleep=no_sleep)
    email = EmailService(conn(), sleep=no_sleep)
    analytics = AnalyticsService(conn(), sleep=no_sleep)
    centres = {region: FulfillmentCenter(conn(), region, sleep=no_sleep) for region in REGIONS}
    publisher = OrderPublisher(conn())

    system = types.SimpleNamespace(
        broker=broker,
        processors=processors,
        inventory=inventory,
        email=email,
        analytics=analytics,
        notifications=[inventory, email, analytics],
        centres=centres,
        publisher=publisher,
        client=client,
        connections=connections,
    )
    yield system
    for c in connections:
        c.close()


@pytest.fixture
def marketplace(broker: InMemoryBroker, no_sleep):
    """One service per marketplace and a shared publisher."""
    services = {m: MarketplaceService(broker, m, sleep=no_sleep) for m in MARKETPLACES}
    return types.SimpleNamespace(
        broker=broker,
        services=services,
        publisher=MarketplacePublisher(broker),
    )


@pytest.fixture
def stox(marketplace, no_sleep):
    """
    The full platform: the marketplace services plus the image, AI and SEO
    stages, two competing AI workers, the sync service and a queue that
    collects the event.* notices.
    """
    broker = marketplace.broker
    events = declare_pipeline_events(broker)
    stages = [
        ImageService(broker, sleep=no_sleep),
        AIService(broker, sleep=no_sleep, worker_id=1),
        AIService(broker, sleep=no_sleep, worker_id=2),
        SEOService(broker, sleep=no_sleep),
    ]
    return types.SimpleNamespace(
        broker=broker,
        services=marketplace.services,
        stages=stages,
        sync=SyncService(broker, sleep=no_sleep),
        events=events,
        publisher=marketplace.publisher,
    )
