"""
E-commerce consumer roles.

Each role is one class that declares the queue it reads from, registers a
consumer through the broker handle injected at construction and handles
decoded Order messages:

  processor          order_processing work queue, manual ack, prefetch 1
  inventory          exclusive queue on order_notifications, auto-ack
  email              exclusive queue on order_notifications, auto-ack
  analytics          exclusive queue on order_notifications, auto-ack
  fulfillment_<R>    fulfillment_<R> bound to <R> on regional_fulfillment

Roles are looked up in ROLES and built once with build_role(). Simulated
work goes through an injected sleep coroutine so tests never wait.
"""

import asyncio
import functools
import logging
from collections import Counter, defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

from scenarios.orders import Order
from scenarios.topologies import (
    NOTIFICATIONS_EXCHANGE,
    ORDER_QUEUE,
    REGIONS,
    declare_ecommerce,
    declare_fulfillment,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Role:
    """Base consumer role. Subclasses set the queue layout and handle()."""

    name = "role"
    auto_ack = True
    prefetch: Optional[int] = None

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.broker = broker
        self._sleep = sleep
        self.handled: List[Order] = []
        self.failed_count = 0
        self.queue = self.declare()
        self.consumer = broker.consume(self.queue, auto_ack=self.auto_ack, prefetch=self.prefetch)
        logger.info("%s listening on %s", self.name, self.queue)

    def declare(self) -> str:
        raise NotImplementedError

    async def handle(self, order: Order) -> None:
        raise NotImplementedError

    async def process_one(self):
        """
        Handle the next delivery, if any.

        Returns the delivery that was handled (successfully or not), or None
        when nothing was waiting. A failed manual-ack delivery is nacked
        without requeue.
        """
        delivery = self.consumer.get(timeout=0)
        if delivery is None:
            return None
        try:
            order = Order.from_json(delivery.body)
            await self.handle(order)
        except Exception:
            self.failed_count += 1
            logger.error("%s failed to handle delivery %s", self.name, delivery.delivery_tag, exc_info=True)
            if not delivery.auto_ack:
                self.consumer.nack(delivery.delivery_tag, requeue=False)
            return delivery
        if not delivery.auto_ack:
            self.consumer.ack(delivery.delivery_tag)
        self.handled.append(order)
        return delivery

    async def process_all(self) -> int:
        """Handle every waiting delivery. Returns the number handled."""
        count = 0
        while await self.process_one() is not None:
            count += 1
        return count

    async def run(self, stop: asyncio.Event, poll_interval: float = 0.05) -> None:
        """Keep handling deliveries until stop is set."""
        while not stop.is_set():
            if await self.process_one() is None:
                await asyncio.sleep(poll_interval)

    def close(self) -> None:
        self.consumer.cancel()


class OrderProcessor(Role):
    """Competing worker on the order_processing queue."""

    name = "processor"
    auto_ack = False
    prefetch = 1

    def __init__(self, broker, sleep: Sleep = asyncio.sleep, processing_time: float = 0.0):
        self.processing_time = processing_time
        super().__init__(broker, sleep)

    def declare(self) -> str:
        declare_ecommerce(self.broker)
        return ORDER_QUEUE

    async def handle(self, order: Order) -> None:
        if order.amount <= 0:
            raise ValueError(f"Order {order.id} has non-positive amount {order.amount}")
        logger.info("Processing order %s (product=%s amount=%.2f)", order.id, order.product, order.amount)
        await self._sleep(self.processing_time)
        logger.info("Order %s processed", order.id)


class _NotificationRole(Role):
    """Owns a private, server-named queue bound to the notification fanout."""

    def declare(self) -> str:
        declare_ecommerce(self.broker)
        queue = self.broker.declare_queue("", exclusive=True)
        self.broker.bind(queue, NOTIFICATIONS_EXCHANGE)
        return queue


class InventoryService(_NotificationRole):
    name = "inventory"

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.reserved: Counter = Counter()
        super().__init__(broker, sleep)

    async def handle(self, order: Order) -> None:
        self.reserved[order.product] += 1
        logger.info("Reserving stock for %s (product=%s)", order.id, order.product)


class EmailService(_NotificationRole):
    name = "email"

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.sent: List[tuple] = []
        super().__init__(broker, sleep)

    async def handle(self, order: Order) -> None:
        self.sent.append((order.user_id, order.id))
        logger.info("Sending confirmation to user %s for order %s", order.user_id, order.id)


class AnalyticsService(_NotificationRole):
    name = "analytics"

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.revenue_by_region: Dict[str, float] = defaultdict(float)
        super().__init__(broker, sleep)

    async def handle(self, order: Order) -> None:
        self.revenue_by_region[order.region] += order.amount
        logger.info(
            "Recording sale product=%s amount=%.2f region=%s", order.product, order.amount, order.region,
        )


class FulfillmentCenter(Role):
    """Receives only the orders routed with its own region code."""

    def __init__(self, broker, region: str, sleep: Sleep = asyncio.sleep):
        self.region = region
        self.name = f"fulfillment_{region}"
        super().__init__(broker, sleep)

    def declare(self) -> str:
        return declare_fulfillment(self.broker, self.region)

    async def handle(self, order: Order) -> None:
        if order.region != self.region:
            logger.warning("%s received order %s for region %s", self.name, order.id, order.region)
        logger.info("Preparing shipment for order %s in %s", order.id, self.region)


ROLES: Dict[str, Callable[..., Role]] = {
    "processor": OrderProcessor,
    "inventory": InventoryService,
    "email": EmailService,
    "analytics": AnalyticsService,
}
ROLES.update({
    f"fulfillment_{region}": functools.partial(FulfillmentCenter, region=region)
    for region in REGIONS
})


def build_role(name: str, broker, sleep: Sleep = asyncio.sleep) -> Role:
    """
    Build the role registered under name.

    Raises:
        ValueError: if name is not a known role.
    """
    try:
        factory = ROLES[name]
    except KeyError:
        raise ValueError(f"Unknown role {name!r}; expected one of {sorted(ROLES)}") from None
    return factory(broker, sleep=sleep)
