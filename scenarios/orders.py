"""
E-commerce orders and the publisher that fans them out.

One placed order travels three ways at once:

  1. order_processing work queue   -> exactly one OrderProcessor (persistent)
  2. order_notifications fanout    -> inventory, email and analytics, each a copy
  3. regional_fulfillment direct   -> only the fulfillment centre of order.region
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Set

from scenarios.topologies import FULFILLMENT_EXCHANGE, NOTIFICATIONS_EXCHANGE, ORDER_QUEUE

logger = logging.getLogger(__name__)

ORDER_INPUT_FORMAT = "user_id:product:amount:region:priority"
_REQUIRED_FIELDS = {"id", "user_id", "product", "amount", "region", "priority"}


@dataclass
class Order:
    id: str
    user_id: str
    product: str
    amount: float
    region: str
    priority: str = "standard"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        missing = _REQUIRED_FIELDS - set(data.keys())
        if missing:
            raise ValueError(f"Invalid order message: missing fields {sorted(missing)}")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            product=data["product"],
            amount=float(data["amount"]),
            region=data["region"],
            priority=data["priority"],
        )

    @classmethod
    def from_json(cls, body: bytes) -> "Order":
        return cls.from_dict(json.loads(body))


def parse_order_input(text: str, order_id: Optional[str] = None) -> Order:
    """
    Parse one line of the form user_id:product:amount:region:priority.

    Raises ValueError when the line does not have exactly five non-empty
    fields or the amount is not a number. The priority is free text;
    "standard" and "express" are the usual values.
    """
    parts = [p.strip() for p in text.strip().split(":")]
    if len(parts) != 5 or not all(parts):
        raise ValueError(f"Expected {ORDER_INPUT_FORMAT}, e.g. user123:laptop:999.99:US:express")
    user_id, product, amount, region, priority = parts
    try:
        amount_value = float(amount)
    except ValueError:
        raise ValueError(f"Invalid amount: {amount!r}") from None
    return Order(
        id=order_id or f"order_{uuid.uuid4().hex[:12]}",
        user_id=user_id,
        product=product,
        amount=amount_value,
        region=region,
        priority=priority,
    )


class OrderPublisher:
    """Places orders on the three e-commerce channels through one shared broker handle."""

    def __init__(self, broker):
        self.broker = broker
        self.placed_count = 0

    def place(self, order: Order) -> Dict[str, Optional[Set[str]]]:
        """
        Publish order to the work queue, the notification fanout and the
        regional direct exchange. Returns the queues reached per channel
        (None per channel when the broker cannot report it).
        """
        body = order.to_dict()
        routed = {
            "processing": self.broker.publish("", ORDER_QUEUE, body, persistent=True),
            "notifications": self.broker.publish(NOTIFICATIONS_EXCHANGE, "", body),
            "fulfillment": self.broker.publish(FULFILLMENT_EXCHANGE, order.region, body),
        }
        self.placed_count += 1
        if routed["fulfillment"] is not None and not routed["fulfillment"]:
            logger.warning("No fulfillment centre bound for region=%s order=%s", order.region, order.id)
        logger.info(
            "Placed order=%s product=%s amount=%.2f region=%s",
            order.id, order.product, order.amount, order.region,
        )
        return routed
