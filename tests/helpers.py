"""
Factory functions for building valid test payloads.

Using plain functions (not fixtures) keeps test data creation explicit and
easy to customise inline with **overrides. Every function returns a fresh
object so tests cannot accidentally share mutable state.
"""

import uuid

from scenarios.orders import Order


def make_order(**overrides) -> Order:
    """Return a valid e-commerce order as placed by OrderPublisher."""
    fields = {
        "id": f"order_{uuid.uuid4().hex[:12]}",
        "user_id": "user123",
        "product": "laptop",
        "amount": 999.99,
        "region": "US",
        "priority": "express",
    }
    fields.update(overrides)
    return Order(**fields)


def make_product(**overrides) -> dict:
    """Return a product as published to stox.listings."""
    product = {
        "id": f"prod_{uuid.uuid4().hex[:8]}",
        "user_id": "user_123",
        "title": "Wireless Headphones",
        "description": "Noise-cancelling over-ear headphones",
        "price": 200.0,
        "currency": "USD",
        "category": "electronics",
        "status": "enhanced",
    }
    product.update(overrides)
    return product


def make_upload(image_sizes=(1_024_000, 890_000), **overrides) -> dict:
    """Return a product as a seller uploads it, before the pipeline has touched it."""
    product = make_product(**{"status": "uploaded", **overrides})
    product.setdefault("images", [
        {"id": f"img_{n}", "original_url": f"https://example.com/img_{n}.jpg", "size": size}
        for n, size in enumerate(image_sizes)
    ])
    return product


def make_marketplace_order(marketplace: str = "amazon", country: str = "USA", **overrides) -> dict:
    """Return a marketplace order with a shipping address in country."""
    order = {
        "id": f"{marketplace}_order_{uuid.uuid4().hex[:6]}",
        "marketplace": marketplace,
        "order_id": f"EXT-{uuid.uuid4().hex[:9].upper()}",
        "product_id": "prod_001",
        "user_id": "user_123",
        "quantity": 1,
        "price": 219.99,
        "status": "new",
        "customer_info": {
            "name": "John Smith",
            "email": "john.smith@example.com",
            "address": {"city": "Seattle", "country": country},
        },
    }
    order.update(overrides)
    return order


def make_inventory_update(marketplace: str = "amazon", **overrides) -> dict:
    update = {
        "product_id": "prod_001",
        "marketplace": marketplace,
        "stock": 42,
        "price": 189.99,
        "update_type": "both",
    }
    update.update(overrides)
    return update


def declare_bound_queue(broker, exchange: str, kind: str, routing_key: str = "", name: str = "") -> str:
    """Declare exchange and one queue bound to it. Returns the queue name."""
    broker.declare_exchange(exchange, kind)
    queue = broker.declare_queue(name)
    broker.bind(queue, exchange, routing_key)
    return queue


def bodies(broker, queue: str) -> list:
    """Decoded bodies of the ready messages in queue, head first."""
    return [m.text() for m in broker.peek(queue)]
