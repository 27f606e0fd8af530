"""
Exchange and queue layouts used by the demo scenarios.

Every declare_* function takes any broker handle exposing declare_exchange /
declare_queue / bind (InMemoryBroker, a Connection, or infra.rabbitmq's
RabbitMQBroker) and is idempotent, so producers and consumers can both call
it on start-up regardless of which one comes up first.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)

# Tutorials
TASK_QUEUE = "task_queue"
NEWS_EXCHANGE = "news_broadcast"
LOGS_EXCHANGE = "logs_direct"
SEVERITIES = ("info", "warning", "error")

# E-commerce
ORDER_QUEUE = "order_processing"
NOTIFICATIONS_EXCHANGE = "order_notifications"
FULFILLMENT_EXCHANGE = "regional_fulfillment"
REGIONS = ("US", "EU", "ASIA")

# Marketplace platform
IMAGES_EXCHANGE = "stox.images"
LISTINGS_EXCHANGE = "stox.listings"
SYNC_EXCHANGE = "stox.sync"
MARKETPLACE_ORDERS_EXCHANGE = "stox.orders"
MARKETPLACE_EXCHANGES = (
    (IMAGES_EXCHANGE, "topic"),
    (LISTINGS_EXCHANGE, "fanout"),
    (SYNC_EXCHANGE, "direct"),
    (MARKETPLACE_ORDERS_EXCHANGE, "topic"),
)
MARKETPLACES = ("amazon", "trendyol", "hepsiburada")

# Product pipeline: image upload -> AI enhancement -> SEO -> listing broadcast
IMAGE_UPLOADS_QUEUE = "image_uploads"
AI_QUEUE = "ai_processing"
SEO_QUEUE = "seo_processing"
PIPELINE_EVENTS_QUEUE = "pipeline_events"
AI_ROUTING_KEY = "image.process"
SEO_ROUTING_KEY = "image.enhanced"
PIPELINE_EVENT_PATTERN = "event.*"

# Sync service inputs
INVENTORY_UPDATES_QUEUE = "inventory_updates"
PRICE_UPDATES_QUEUE = "price_updates"
LISTING_EVENTS_QUEUE = "listing_events"


def declare_work_queue(broker) -> str:
    return broker.declare_queue(TASK_QUEUE, durable=True)


def declare_news(broker) -> None:
    broker.declare_exchange(NEWS_EXCHANGE, "fanout")


def declare_logs(broker) -> None:
    broker.declare_exchange(LOGS_EXCHANGE, "direct")


def declare_ecommerce(broker) -> None:
    """Order work queue plus the notification fanout and fulfillment direct exchanges."""
    broker.declare_queue(ORDER_QUEUE, durable=True)
    broker.declare_exchange(NOTIFICATIONS_EXCHANGE, "fanout", durable=True)
    broker.declare_exchange(FULFILLMENT_EXCHANGE, "direct", durable=True)
    logger.info("Declared e-commerce topology")


def fulfillment_queue(region: str) -> str:
    return f"fulfillment_{region}"


def declare_fulfillment(broker, region: str) -> str:
    """Declare the queue of one regional fulfillment centre, bound to its region code."""
    broker.declare_exchange(FULFILLMENT_EXCHANGE, "direct", durable=True)
    queue = broker.declare_queue(fulfillment_queue(region))
    broker.bind(queue, FULFILLMENT_EXCHANGE, region)
    return queue


def declare_marketplace_exchanges(broker) -> None:
    for name, kind in MARKETPLACE_EXCHANGES:
        broker.declare_exchange(name, kind, durable=True)
    logger.info("Declared %d marketplace exchange(s)", len(MARKETPLACE_EXCHANGES))


def marketplace_queues(marketplace: str) -> Dict[str, str]:
    return {
        "listings": f"{marketplace}_listings",
        "orders": f"{marketplace}_orders",
        "sync": f"{marketplace}_sync",
    }


def declare_marketplace(broker, marketplace: str) -> Dict[str, str]:
    """
    Declare and bind the three queues of one marketplace service:

      <m>_listings  on stox.listings (fanout, every listing)
      <m>_orders    on stox.orders   (topic, order.<m>.*)
      <m>_sync      on stox.sync     (direct, <m>_sync)
    """
    declare_marketplace_exchanges(broker)
    queues = marketplace_queues(marketplace)
    bindings = (
        (queues["listings"], LISTINGS_EXCHANGE, ""),
        (queues["orders"], MARKETPLACE_ORDERS_EXCHANGE, f"order.{marketplace}.*"),
        (queues["sync"], SYNC_EXCHANGE, sync_routing_key(marketplace)),
    )
    for queue, exchange, routing_key in bindings:
        broker.declare_queue(queue, durable=True)
        broker.bind(queue, exchange, routing_key)
    return queues


def sync_routing_key(marketplace: str) -> str:
    return f"{marketplace}_sync"


def declare_product_pipeline(broker) -> Dict[str, str]:
    """
    Declare the product pipeline queues:

      image_uploads    default exchange, raw products from sellers
      ai_processing    on stox.images (topic, image.process)
      seo_processing   on stox.images (topic, image.enhanced)

    The SEO stage broadcasts finished products on stox.listings.
    """
    declare_marketplace_exchanges(broker)
    broker.declare_queue(IMAGE_UPLOADS_QUEUE, durable=True)
    for queue, routing_key in ((AI_QUEUE, AI_ROUTING_KEY), (SEO_QUEUE, SEO_ROUTING_KEY)):
        broker.declare_queue(queue, durable=True)
        broker.bind(queue, IMAGES_EXCHANGE, routing_key)
    return {"uploads": IMAGE_UPLOADS_QUEUE, "ai": AI_QUEUE, "seo": SEO_QUEUE}


def declare_pipeline_events(broker) -> str:
    """Queue collecting the event.* progress notifications published on stox.images."""
    declare_marketplace_exchanges(broker)
    queue = broker.declare_queue(PIPELINE_EVENTS_QUEUE, durable=True)
    broker.bind(queue, IMAGES_EXCHANGE, PIPELINE_EVENT_PATTERN)
    return queue


def declare_sync_inputs(broker) -> Dict[str, str]:
    """
    Declare the queues read by the sync service. listing_events is bound to
    the stox.listings fanout, so it also sees the products themselves.
    """
    declare_marketplace_exchanges(broker)
    broker.declare_queue(INVENTORY_UPDATES_QUEUE, durable=True)
    broker.declare_queue(PRICE_UPDATES_QUEUE, durable=True)
    broker.declare_queue(LISTING_EVENTS_QUEUE, durable=True)
    broker.bind(LISTING_EVENTS_QUEUE, LISTINGS_EXCHANGE, "event.listed")
    return {
        "inventory": INVENTORY_UPDATES_QUEUE,
        "price": PRICE_UPDATES_QUEUE,
        "listing_events": LISTING_EVENTS_QUEUE,
    }
