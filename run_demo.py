"""
Demo launcher.

Starts the monitoring API wired to a live in-memory e-commerce system. An
asyncio event loop runs in a background thread with one consumer task per
role (two competing processors, the three notification services and one
fulfillment centre per region) while orders are placed periodically, so the
monitoring endpoints always have traffic to show.

Usage
-----
    python run_demo.py

Then in a separate terminal:
    curl -H "Authorization: Bearer test-token" http://localhost:5000/api/queues
"""

import asyncio
import itertools
import logging
import random
import threading

from minibroker.broker import InMemoryBroker
from minibroker.config import load_settings
from minibroker.monitor import create_app
from scenarios.orders import Order, OrderPublisher
from scenarios.roles import ROLES, build_role
from scenarios.topologies import REGIONS, declare_ecommerce

logger = logging.getLogger("run_demo")

_ORDER_INTERVAL = 1.0     # seconds between demo orders
_PROCESSORS = 2           # competing order processors
_PRODUCTS = ("laptop", "phone", "headphones", "monitor", "keyboard")


def _demo_order(seq: int) -> Order:
    return Order(
        id=f"order_{seq:05d}",
        user_id=f"user{random.randint(100, 999)}",
        product=random.choice(_PRODUCTS),
        amount=round(random.uniform(10, 1500), 2),
        region=random.choice(REGIONS),
        priority=random.choice(("standard", "express")),
    )


async def _place_orders(publisher: OrderPublisher, stop: asyncio.Event) -> None:
    for seq in itertools.count(1):
        if stop.is_set():
            return
        publisher.place(_demo_order(seq))
        await asyncio.sleep(_ORDER_INTERVAL)


def build_system(settings=None):
    """
    Wire broker, roles, order publisher and monitoring app.

    Roles are built before the first order is placed so the exclusive
    notification queues exist when the fanout publishes.
    """
    settings = settings or load_settings()
    broker = InMemoryBroker(default_prefetch=settings.default_prefetch)
    declare_ecommerce(broker)
    names = ["processor"] * _PROCESSORS + [name for name in ROLES if name != "processor"]
    roles = [build_role(name, broker.open_connection()) for name in names]
    publisher = OrderPublisher(broker)
    app = create_app(broker, settings.monitor_tokens)
    return broker, roles, publisher, app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    broker, roles, publisher, app = build_system(settings)

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    async def run_all():
        await asyncio.gather(
            _place_orders(publisher, stop),
            *(role.run(stop) for role in roles),
        )

    def run_system():
        asyncio.set_event_loop(loop)
        loop.run_until_complete(run_all())

    t = threading.Thread(target=run_system, daemon=True, name="ecommerce")
    t.start()

    logger.info("%s running with %d role(s)", settings.service_name, len(roles))
    logger.info("Monitoring API at http://localhost:5000/api/status")

    try:
        app.run(host="0.0.0.0", port=5000, debug=False, use_reloader=False)
    except KeyboardInterrupt:
        logger.info("Shutting down demo...")
    finally:
        loop.call_soon_threadsafe(stop.set)
        t.join(timeout=2)


if __name__ == "__main__":
    main()
