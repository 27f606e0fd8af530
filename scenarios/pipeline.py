"""
Product pipeline and inventory sync for the marketplace platform.

A seller's product enters on the image_uploads queue and moves through
three stages before it reaches the marketplaces:

  ImageService   image_uploads   -> stox.images  image.process
  AIService      ai_processing   -> stox.images  image.enhanced
  SEOService     seo_processing  -> stox.listings (fanout, every marketplace)

Each stage also publishes an event.<stage> notification on stox.images.
SyncService reads inventory_updates and price_updates and fans each change
out on stox.sync, and tracks marketplace_listed events from listing_events.

Every stage consumes with manual ack and prefetch 1. A handler failure
nacks the delivery without requeue, the same as MarketplaceService.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Tuple

from scenarios.marketplace import LISTED_EVENT, MarketplacePublisher, processing_event
from scenarios.topologies import (
    AI_ROUTING_KEY,
    IMAGES_EXCHANGE,
    LISTINGS_EXCHANGE,
    SEO_ROUTING_KEY,
    declare_product_pipeline,
    declare_sync_inputs,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

ENHANCEMENTS = ("background_removal", "color_enhancement", "noise_reduction", "resolution_upscale")

_TITLE_SUFFIXES = {
    "electronics": " - Premium Quality, Fast Shipping | Best Price Guaranteed",
    "wearables": " - Advanced Fitness Tracking | Free Shipping",
}
_CATEGORY_KEYWORDS = {
    "electronics": ["wireless", "bluetooth", "high-quality", "noise cancellation"],
    "wearables": ["fitness", "health", "tracking", "smart", "heart rate"],
}


def seo_content(product: dict) -> dict:
    """Build the SEO block for a product from its title, description and category."""
    category = product.get("category", "").lower()
    title = product["title"] + _TITLE_SUFFIXES.get(category, "")
    description = (
        f"{product['title']}. {product.get('description', '')}. Free shipping, 30-day return policy, "
        "and 2-year warranty included. Trusted by thousands of customers worldwide. "
        "Order now for fast delivery!"
    )
    keywords = [product["title"].lower(), category, "free shipping", "best price", "warranty", "premium quality"]
    keywords += _CATEGORY_KEYWORDS.get(category, [])
    return {
        "title": title,
        "description": description,
        "keywords": keywords,
        "meta_tags": {
            "og:title": title,
            "og:type": "product",
            "product:price": f"{float(product.get('price', 0)):.2f} {product.get('currency', 'USD')}",
            "product:category": product.get("category", ""),
        },
        "generated_by": "ai",
        "score": seo_score(title, description, keywords),
    }


def seo_score(title: str, description: str, keywords: List[str]) -> float:
    score = 5.0
    if 50 <= len(title) <= 60:
        score += 1.0
    if 150 <= len(description) <= 160:
        score += 1.0
    if len(keywords) >= 5:
        score += 1.0
    lowered = description.lower()
    if "free shipping" in lowered:
        score += 0.5
    if "warranty" in lowered:
        score += 0.5
    return min(score, 10.0)


class PipelineStage:
    """Base stage. Subclasses set name/queue_key and handle()."""

    name = "stage"
    queue_key = ""

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.broker = broker
        self._sleep = sleep
        self.handled: List[dict] = []
        self.failed_count = 0
        self.queue = declare_product_pipeline(broker)[self.queue_key]
        self.consumer = broker.consume(self.queue, auto_ack=False, prefetch=1)
        logger.info("%s listening on %s", self.name, self.queue)

    async def handle(self, product: dict) -> None:
        raise NotImplementedError

    def announce(self, event_type: str, product: dict, data: dict) -> None:
        self.broker.publish(
            IMAGES_EXCHANGE, f"event.{event_type}", processing_event(event_type, product["id"], self.name, data),
        )

    async def process_one(self):
        """Handle the next delivery. Returns it, or None when the queue is empty."""
        delivery = self.consumer.get(timeout=0)
        if delivery is None:
            return None
        try:
            product = delivery.json()
            await self.handle(product)
        except Exception:
            self.failed_count += 1
            logger.error("%s failed on delivery %s", self.name, delivery.delivery_tag, exc_info=True)
            self.consumer.nack(delivery.delivery_tag, requeue=False)
            return delivery
        self.consumer.ack(delivery.delivery_tag)
        self.handled.append(product)
        return delivery

    async def process_all(self) -> int:
        count = 0
        while await self.process_one() is not None:
            count += 1
        return count

    def close(self) -> None:
        self.consumer.cancel()


class ImageService(PipelineStage):
    """Stores uploaded images and hands the product to AI enhancement."""

    name = "image-service"
    queue_key = "uploads"

    async def handle(self, product: dict) -> None:
        images = product.get("images", [])
        for n, image in enumerate(images):
            image["s3_key"] = f"products/{product['id']}/image_{n}.jpg"
            image["is_processed"] = False
        product["status"] = "images_uploaded"
        logger.info("Stored %d image(s) for product %s", len(images), product["id"])
        self.broker.publish(IMAGES_EXCHANGE, AI_ROUTING_KEY, product, persistent=True)
        self.announce("image_uploaded", product, {
            "image_count": len(images),
            "total_size": sum(int(image.get("size", 0)) for image in images),
        })


class AIService(PipelineStage):
    """Competing AI worker; several can share ai_processing."""

    name = "ai-service"
    queue_key = "ai"

    def __init__(self, broker, sleep: Sleep = asyncio.sleep, worker_id: int = 1):
        self.worker_id = worker_id
        super().__init__(broker, sleep)

    async def handle(self, product: dict) -> None:
        images = product.get("images", [])
        await self._sleep(2 + len(images))
        for n, image in enumerate(images):
            image["is_processed"] = True
            image["enhanced_url"] = f"https://cdn.stox.com/enhanced/{product['id']}/image_{n}_enhanced.jpg"
        product["status"] = "ai_enhanced"
        logger.info("AI worker #%d enhanced product %s", self.worker_id, product["id"])
        self.broker.publish(IMAGES_EXCHANGE, SEO_ROUTING_KEY, product, persistent=True)
        self.announce("ai_enhanced", product, {
            "worker_id": self.worker_id,
            "images_enhanced": len(images),
            "enhancements": list(ENHANCEMENTS),
        })


class SEOService(PipelineStage):
    """Writes SEO content and broadcasts the finished product to every marketplace."""

    name = "seo-service"
    queue_key = "seo"

    async def handle(self, product: dict) -> None:
        await self._sleep(3.0)
        seo = seo_content(product)
        product["seo"] = seo
        product["status"] = "seo_generated"
        logger.info("Generated SEO for product %s (score %.1f)", product["id"], seo["score"])
        self.broker.publish(LISTINGS_EXCHANGE, "", product, persistent=True)
        self.announce("seo_generated", product, {
            "seo_score": seo["score"],
            "keyword_count": len(seo["keywords"]),
        })


class SyncService:
    """
    Inventory sync. Stock and price changes are fanned out to the
    marketplaces' <m>_sync queues; marketplace_listed events are recorded in
    listings as (product_id, marketplace) -> listing_id.
    """

    name = "sync-service"

    def __init__(self, broker, sleep: Sleep = asyncio.sleep):
        self.broker = broker
        self._sleep = sleep
        self.publisher = MarketplacePublisher(broker)
        self.queues = declare_sync_inputs(broker)
        self.consumers = {
            kind: broker.consume(queue, auto_ack=False, prefetch=1)
            for kind, queue in self.queues.items()
        }
        self._handlers = {
            "inventory": self.handle_inventory,
            "price": self.handle_price,
            "listing_events": self.handle_listing_event,
        }
        self.listings: Dict[Tuple[str, str], str] = {}
        self.synced: List[dict] = []
        self.failed_count = 0

    async def handle_inventory(self, update: dict) -> None:
        routed = self.publisher.sync(update)
        self.synced.append(update)
        logger.info(
            "Synced %s update for product %s to %d queue(s)",
            update.get("update_type", "both"), update["product_id"], len(routed),
        )

    async def handle_price(self, update: dict) -> None:
        await self.handle_inventory(dict(update, update_type="price"))

    async def handle_listing_event(self, event: dict) -> None:
        if event.get("type") != LISTED_EVENT:
            return
        data = event["data"]
        self.listings[(event["product_id"], data["marketplace"])] = data["listing_id"]
        logger.info("Tracking listing %s of %s on %s", data["listing_id"], event["product_id"], data["marketplace"])

    async def process_one(self, kind: str):
        """Handle the next delivery on one of inventory/price/listing_events. Returns it, or None."""
        consumer = self.consumers[kind]
        delivery = consumer.get(timeout=0)
        if delivery is None:
            return None
        try:
            await self._handlers[kind](delivery.json())
        except Exception:
            self.failed_count += 1
            logger.error("sync failed on %s delivery %s", kind, delivery.delivery_tag, exc_info=True)
            consumer.nack(delivery.delivery_tag, requeue=False)
            return delivery
        consumer.ack(delivery.delivery_tag)
        return delivery

    async def process_all(self) -> int:
        count = 0
        for kind in ("inventory", "price", "listing_events"):
            while await self.process_one(kind) is not None:
                count += 1
        return count

    def close(self) -> None:
        for consumer in self.consumers.values():
            consumer.cancel()
