"""
Multi-marketplace listing platform.

A product published to stox.listings (fanout) reaches every marketplace
service. Orders are published to stox.orders (topic) with the routing key
order.<marketplace>.<region>, so each service's <m>_orders queue (bound to
order.<m>.*) sees only its own orders whatever the region. Inventory updates
go to stox.sync (direct) under <m>_sync.

A service that lists a product announces it with a marketplace_listed event
on stox.listings through the same broker handle it consumes with; services
ignore events they receive there.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from scenarios.topologies import (
    IMAGE_UPLOADS_QUEUE,
    INVENTORY_UPDATES_QUEUE,
    LISTINGS_EXCHANGE,
    MARKETPLACE_ORDERS_EXCHANGE,
    MARKETPLACES,
    PRICE_UPDATES_QUEUE,
    SYNC_EXCHANGE,
    declare_marketplace,
    declare_marketplace_exchanges,
    sync_routing_key,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

LISTED_EVENT = "marketplace_listed"

_REGIONS_BY_COUNTRY = {
    "USA": "us",
    "Canada": "us",
    "Turkey": "tr",
    "Germany": "eu",
    "France": "eu",
    "Italy": "eu",
    "Spain": "eu",
}

# marketplace -> (currency, exchange rate from USD, markup, simulated API seconds)
MARKETPLACE_PRICING = {
    "amazon": ("USD", 1.0, 1.10, 2.0),
    "trendyol": ("TRY", 27.5, 1.08, 1.5),
    "hepsiburada": ("TRY", 27.5, 1.12, 1.5),
}


def region_code(country: str) -> str:
    """Map a customer country to the region segment of an order routing key."""
    return _REGIONS_BY_COUNTRY.get(country, "intl")


def order_routing_key(marketplace: str, country: str) -> str:
    return f"order.{marketplace}.{region_code(country)}"


def processing_event(event_type: str, product_id: str, source: str, data: dict) -> dict:
    """Progress notification shared by the pipeline stages and the marketplace services."""
    return {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "product_id": product_id,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": source,
    }


class MarketplacePublisher:
    """Publishes products, orders and inventory updates onto the platform exchanges."""

    def __init__(self, broker):
        self.broker = broker
        declare_marketplace_exchanges(broker)

    def upload_product(self, product: dict) -> Optional[Set[str]]:
        """Hand a new product to the image stage of the product pipeline."""
        return self.broker.publish("", IMAGE_UPLOADS_QUEUE, product, persistent=True)

    def list_product(self, product: dict) -> Optional[Set[str]]:
        return self.broker.publish(LISTINGS_EXCHANGE, "", product, persistent=True)

    def update_inventory(self, update: dict) -> Optional[Set[str]]:
        """Queue a stock or price change for the sync service."""
        queue = PRICE_UPDATES_QUEUE if update.get("update_type") == "price" else INVENTORY_UPDATES_QUEUE
        return self.broker.publish("", queue, update, persistent=True)

    def route_order(self, order: dict) -> Optional[Set[str]]:
        country = order.get("customer_info", {}).get("address", {}).get("country", "")
        routing_key = order_routing_key(order["marketplace"], country)
        routed = self.broker.publish(MARKETPLACE_ORDERS_EXCHANGE, routing_key, order, persistent=True)
        logger.info("Routed order %s with key %s", order.get("order_id"), routing_key)
        return routed

    def sync(self, update: dict) -> Set[str]:
        """Send an inventory update to one marketplace, or to all of them for "all"."""
        targets = MARKETPLACES if update["marketplace"] == "all" else (update["marketplace"],)
        routed: Set[str] = set()
        for marketplace in targets:
            routed |= self.broker.publish(SYNC_EXCHANGE, sync_routing_key(marketplace), update) or set()
        return routed


class MarketplaceService:
    """
    One marketplace integration consuming its listings, orders and sync
    queues with manual ack. A handler failure nacks the message without
    requeue.
    """

    def __init__(self, broker, marketplace: str, sleep: Sleep = asyncio.sleep):
        if marketplace not in MARKETPLACE_PRICING:
            raise ValueError(f"Unknown marketplace {marketplace!r}")
        self.broker = broker
        self.marketplace = marketplace
        self._sleep = sleep
        self.queues = declare_marketplace(broker, marketplace)
        self.consumers = {
            kind: broker.consume(queue, auto_ack=False, prefetch=1)
            for kind, queue in self.queues.items()
        }
        self._handlers = {
            "listings": self.handle_listing,
            "orders": self.handle_order,
            "sync": self.handle_sync,
        }
        self.listings: List[dict] = []
        self.orders: List[dict] = []
        self.stock: Dict[str, int] = {}
        self.prices: Dict[str, float] = {}
        self.failed_count = 0

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_listing(self, product: dict) -> None:
        if product.get("type") == LISTED_EVENT:
            return
        currency, rate, markup, api_seconds = MARKETPLACE_PRICING[self.marketplace]
        await self._sleep(api_seconds)
        listing = {
            "id": f"{self.marketplace}_{product['id']}_{uuid.uuid4().hex[:8]}",
            "product_id": product["id"],
            "marketplace": self.marketplace,
            "status": "active",
            "currency": currency,
            "price": round(float(product["price"]) * rate * markup, 2),
        }
        self.listings.append(listing)
        logger.info(
            "%s listed product %s at %.2f %s",
            self.marketplace, product["id"], listing["price"], currency,
        )
        self.broker.publish(LISTINGS_EXCHANGE, "event.listed", processing_event(
            LISTED_EVENT,
            product["id"],
            f"{self.marketplace}-service",
            {"marketplace": self.marketplace, "listing_id": listing["id"], "price": listing["price"]},
        ))

    async def handle_order(self, order: dict) -> None:
        if order.get("marketplace") != self.marketplace:
            raise ValueError(f"Order {order.get('order_id')} belongs to {order.get('marketplace')!r}")
        self.orders.append(dict(order, status="processing"))
        logger.info(
            "%s processing order %s product=%s quantity=%s",
            self.marketplace, order.get("order_id"), order.get("product_id"), order.get("quantity"),
        )

    async def handle_sync(self, update: dict) -> None:
        if update.get("marketplace") not in (self.marketplace, "all"):
            return
        await self._sleep(1.0)
        update_type = update.get("update_type", "both")
        if update_type in ("stock", "both"):
            self.stock[update["product_id"]] = int(update["stock"])
        if update_type in ("price", "both"):
            self.prices[update["product_id"]] = float(update["price"])
        logger.info("%s synced %s for product %s", self.marketplace, update_type, update["product_id"])

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def process_one(self, kind: str):
        """Handle the next delivery on one of listings/orders/sync. Returns it, or None."""
        consumer = self.consumers[kind]
        delivery = consumer.get(timeout=0)
        if delivery is None:
            return None
        try:
            await self._handlers[kind](delivery.json())
        except Exception:
            self.failed_count += 1
            logger.error(
                "%s failed on %s delivery %s", self.marketplace, kind, delivery.delivery_tag, exc_info=True,
            )
            consumer.nack(delivery.delivery_tag, requeue=False)
            return delivery
        consumer.ack(delivery.delivery_tag)
        return delivery

    async def process_all(self) -> int:
        """Drain all three queues, listings first. Returns the number of deliveries handled."""
        count = 0
        for kind in ("listings", "orders", "sync"):
            while await self.process_one(kind) is not None:
                count += 1
        return count

    def close(self) -> None:
        for consumer in self.consumers.values():
            consumer.cancel()
