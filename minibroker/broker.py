"""
In-memory RabbitMQ broker.

Wires the topology registry, the router and the delivery tracker into one
object with the same operations a RabbitMQ channel offers:

  declare_exchange / declare_queue / bind / unbind / delete_queue
  publish(exchange, routing_key, payload, ...)    -> set of routed queues
  consume(queue, auto_ack, prefetch)             -> Consumer stream
  get(queue, auto_ack)                           -> one Delivery or None
  ack / nack / reject

Every messaging pattern of the tutorials runs on it unchanged:

  Work queue (competing consumers)
    Publish to the default exchange ("") with the queue name as routing
    key. Consumers with manual ack and prefetch=1 share the queue and each
    message goes to exactly one of them.

  Fanout (pub/sub)
    Every queue bound to a fanout exchange receives its own copy.

  Direct / topic routing
    Queues receive only messages whose routing key matches their binding.

Connections scope exclusive queues and consumers: closing one cancels its
consumers (requeueing what they held) and deletes its exclusive queues.
Two InMemoryBroker instances never share state.
"""

import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from minibroker.errors import ConnectionClosedError, NotFoundError, UnroutableError
from minibroker.models import (
    DEFAULT_EXCHANGE,
    Binding,
    Delivery,
    Exchange,
    Message,
    encode_payload,
)
from minibroker.router import Router
from minibroker.store import TopologyStore
from minibroker.topology import TopologyRegistry
from minibroker.tracker import Consumer, DeliveryTracker

logger = logging.getLogger(__name__)


class InMemoryBroker:
    """In-process broker with RabbitMQ routing and acknowledgment semantics."""

    def __init__(self, store: Optional[TopologyStore] = None, default_prefetch: int = 0):
        self.topology = TopologyRegistry()
        self.router = Router(self.topology)
        self.tracker = DeliveryTracker(on_discard=self._on_discard, on_cancel=self._on_cancel)
        self.default_prefetch = default_prefetch
        self._store = store
        self._holders: Dict[tuple, Consumer] = {}
        self._lock = threading.Lock()
        self._stats = {"published": 0, "routed": 0, "unroutable": 0}
        if store is not None:
            self._restore(store)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def declare_exchange(self, name: str, kind="direct", durable: bool = False) -> Exchange:
        exchange = self.topology.declare_exchange(name, kind, durable)
        if self._store is not None and exchange.durable:
            self._store.save_exchange(exchange)
        return exchange

    def delete_exchange(self, name: str) -> None:
        self.topology.delete_exchange(name)
        if self._store is not None:
            self._store.delete_exchange(name)

    def declare_queue(
        self,
        name: str = "",
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        owner: Optional[str] = None,
    ) -> str:
        """
        Declare a queue and return its name (generated when name is empty).
        owner is the declaring connection id; use Connection.declare_queue
        rather than passing it directly.
        """
        queue = self.topology.declare_queue(name, durable, exclusive, auto_delete, owner)
        self.tracker.add_queue(queue.name)
        if self._persisted(queue.name):
            self._store.save_queue(queue)
        return queue.name

    def delete_queue(self, name: str, owner: Optional[str] = None) -> int:
        """Delete a queue, cancelling its consumers. Returns the dropped message count."""
        self.topology.check_access(self.topology.get_queue(name), owner)
        self.topology.delete_queue(name)
        dropped = self.tracker.remove_queue(name)
        with self._lock:
            for key in [k for k in self._holders if k[0] == name]:
                del self._holders[key]
        if self._store is not None:
            self._store.delete_queue(name)
        return dropped

    def bind(self, queue: str, exchange: str, routing_key: str = "", owner: Optional[str] = None) -> bool:
        self.topology.check_access(self.topology.get_queue(queue), owner)
        created = self.topology.bind(queue, exchange, routing_key)
        if created and self._store is not None:
            if self.topology.get_exchange(exchange).durable and self._persisted(queue):
                self._store.save_binding(Binding(queue, exchange, routing_key))
        return created

    def unbind(self, queue: str, exchange: str, routing_key: str = "", owner: Optional[str] = None) -> bool:
        self.topology.check_access(self.topology.get_queue(queue), owner)
        removed = self.topology.unbind(queue, exchange, routing_key)
        if removed and self._store is not None:
            self._store.delete_binding(Binding(queue, exchange, routing_key))
        return removed

    def _persisted(self, queue: str) -> bool:
        if self._store is None:
            return False
        try:
            declared = self.topology.get_queue(queue)
        except NotFoundError:
            return False
        return declared.durable and not declared.exclusive

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        persistent: bool = False,
        content_type: Optional[str] = None,
        mandatory: bool = False,
        headers: Optional[Dict[str, Any]] = None,
    ) -> Set[str]:
        """
        Route a message and enqueue an independent copy on every matched queue.

        Returns the names of the queues that received it. An unmatched
        message is dropped silently unless mandatory is set, in which case
        UnroutableError is raised and nothing is enqueued.
        """
        body, content_type = encode_payload(payload, content_type)
        message = Message(
            body=body,
            exchange=exchange,
            routing_key=routing_key,
            content_type=content_type,
            persistent=persistent,
            headers=dict(headers or {}),
        )
        with self._lock:
            self._stats["published"] += 1
        try:
            queues = self.router.route(exchange, routing_key, mandatory=mandatory)
        except UnroutableError:
            with self._lock:
                self._stats["unroutable"] += 1
            raise

        routed = set()
        for queue in sorted(queues):
            if persistent and self._persisted(queue):
                self._store.save_message(queue, message)
            try:
                self.tracker.enqueue(queue, message)
            except NotFoundError:
                # deleted between routing and enqueue
                logger.debug("Queue %s vanished before enqueue", queue)
                continue
            routed.add(queue)

        with self._lock:
            if routed:
                self._stats["routed"] += len(routed)
            else:
                self._stats["unroutable"] += 1
        logger.debug(
            "Published exchange=%r key=%r -> %s", exchange, routing_key, sorted(routed) or "nowhere",
        )
        return routed

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(
        self,
        queue: str,
        auto_ack: bool = False,
        prefetch: Optional[int] = None,
        consumer_tag: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Consumer:
        """
        Register a consumer and return its delivery stream.

        prefetch=None uses the broker's default_prefetch; 0 means unlimited.
        Cancel the returned consumer (or close its connection) to stop it;
        call consume() again to restart.
        """
        declared = self.topology.get_queue(queue)
        self.topology.check_access(declared, owner)
        if prefetch is None:
            prefetch = self.default_prefetch
        return self.tracker.register(queue, auto_ack, prefetch, consumer_tag, owner)

    def get(self, queue: str, auto_ack: bool = True, owner: Optional[str] = None) -> Optional[Delivery]:
        """Pull the head of queue without registering a consumer (basic.get)."""
        self.topology.check_access(self.topology.get_queue(queue), owner)
        key = (queue, auto_ack, owner)
        with self._lock:
            holder = self._holders.get(key)
            if holder is None:
                holder = self.tracker.holder(queue, auto_ack, owner)
                self._holders[key] = holder
        return self.tracker.pull(queue, holder)

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self.tracker.ack(delivery_tag, multiple=multiple)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        self.tracker.nack(delivery_tag, requeue=requeue, multiple=multiple)

    def reject(self, delivery_tag: int, requeue: bool = True) -> None:
        self.tracker.nack(delivery_tag, requeue=requeue)

    def _on_cancel(self, queue: str, remaining: int) -> None:
        try:
            declared = self.topology.get_queue(queue)
        except NotFoundError:
            return
        if declared.auto_delete and remaining == 0:
            logger.info("Auto-deleting queue %s after its last consumer cancelled", queue)
            try:
                self.delete_queue(queue, owner=declared.owner)
            except NotFoundError:
                pass

    def _on_discard(self, queue: str, message: Message) -> None:
        if self._store is not None and message.persistent:
            self._store.delete_message(queue, message.message_id)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def open_connection(self, name: Optional[str] = None) -> "Connection":
        return Connection(self, name)

    def close_connection(self, connection_id: str) -> None:
        """
        Cancel every consumer owned by the connection (requeueing their
        unacked deliveries) and delete the exclusive queues it declared.
        """
        for declared in self.topology.queues():
            try:
                consumers = self.tracker.consumers(declared.name)
            except NotFoundError:
                continue
            for consumer in consumers:
                if consumer.owner == connection_id:
                    consumer.cancel()
        with self._lock:
            holders = [(k, h) for k, h in self._holders.items() if k[2] == connection_id]
            for key, _ in holders:
                del self._holders[key]
        for _, holder in holders:
            holder.cancel()
        for declared in self.topology.queues():
            if declared.exclusive and declared.owner == connection_id:
                try:
                    self.delete_queue(declared.name, owner=connection_id)
                except NotFoundError:
                    pass
        logger.info("Closed connection %s", connection_id)

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    def queue_depth(self, queue: str) -> int:
        """Number of ready (not yet delivered) messages in queue."""
        return self.tracker.depth(queue)

    def consumer_count(self, queue: str) -> int:
        return self.tracker.consumer_count(queue)

    def unacked_count(self, queue: str) -> int:
        return self.tracker.unacked_count(queue)

    def peek(self, queue: str) -> List[Message]:
        """Ready messages of queue, head first, without consuming them."""
        return self.tracker.ready_messages(queue)

    def queue_names(self) -> List[str]:
        return [q.name for q in self.topology.queues()]

    def exchange_names(self) -> List[str]:
        return [e.name for e in self.topology.exchanges()]

    def bindings(self, queue: Optional[str] = None) -> List[Binding]:
        return self.topology.bindings(queue)

    def queue_info(self) -> List[Dict[str, Any]]:
        info = []
        for declared in self.topology.queues():
            try:
                consumers = self.tracker.consumer_count(declared.name)
                info.append({
                    "name": declared.name,
                    "messages": self.tracker.depth(declared.name),
                    "unacked": self.tracker.unacked_count(declared.name),
                    "consumers": consumers,
                    "durable": declared.durable,
                    "exclusive": declared.exclusive,
                    "auto_delete": declared.auto_delete,
                    "state": "running" if consumers else "idle",
                })
            except NotFoundError:
                continue
        return info

    def exchange_info(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": exchange.name,
                "kind": exchange.kind.value,
                "durable": exchange.durable,
                "bindings": [
                    {"queue": b.queue, "routing_key": b.routing_key}
                    for b in self.topology.bindings_for(exchange.name)
                ],
            }
            for exchange in self.topology.exchanges()
            if exchange.name != DEFAULT_EXCHANGE
        ]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
        stats.update(self.tracker.stats())
        return stats

    def purge(self, queue: str) -> int:
        """Drop every ready message in queue. Returns the number dropped."""
        return self.tracker.purge(queue)

    def purge_all(self) -> None:
        """Clear every queue. Topology and consumers stay in place."""
        for name in self.queue_names():
            try:
                self.tracker.purge(name)
            except NotFoundError:
                continue

    def _restore(self, store: TopologyStore) -> None:
        snapshot = store.load()
        for exchange in snapshot.exchanges:
            self.topology.declare_exchange(exchange.name, exchange.kind, exchange.durable)
        for queue in snapshot.queues:
            self.topology.declare_queue(queue.name, queue.durable, queue.exclusive, queue.auto_delete)
            self.tracker.add_queue(queue.name)
        for binding in snapshot.bindings:
            self.topology.bind(binding.queue, binding.exchange, binding.routing_key)
        restored = 0
        for queue, messages in snapshot.messages.items():
            if messages and self.topology.has_queue(queue):
                self.tracker.restore(queue, messages)
                restored += len(messages)
        logger.info(
            "Restored %d exchange(s), %d queue(s), %d binding(s), %d message(s) from store",
            len(snapshot.exchanges), len(snapshot.queues), len(snapshot.bindings), restored,
        )


class Connection:
    """
    A client connection to an InMemoryBroker.

    Exclusive queues declared through a connection belong to it, and the
    consumers it registers are cancelled when it closes, which requeues
    whatever they had not acknowledged. This is how a crashed worker is
    modelled.
    """

    def __init__(self, broker: InMemoryBroker, name: Optional[str] = None):
        self.broker = broker
        self.id = name or f"conn-{uuid.uuid4().hex[:12]}"
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Connection {self.id} is closed")

    def declare_exchange(self, name: str, kind="direct", durable: bool = False) -> Exchange:
        self._check_open()
        return self.broker.declare_exchange(name, kind, durable)

    def declare_queue(
        self,
        name: str = "",
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        self._check_open()
        return self.broker.declare_queue(name, durable, exclusive, auto_delete, owner=self.id)

    def delete_queue(self, name: str) -> int:
        self._check_open()
        return self.broker.delete_queue(name, owner=self.id)

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> bool:
        self._check_open()
        return self.broker.bind(queue, exchange, routing_key, owner=self.id)

    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> bool:
        self._check_open()
        return self.broker.unbind(queue, exchange, routing_key, owner=self.id)

    def publish(self, exchange: str, routing_key: str, payload: Any, **kwargs) -> Set[str]:
        self._check_open()
        return self.broker.publish(exchange, routing_key, payload, **kwargs)

    def consume(
        self,
        queue: str,
        auto_ack: bool = False,
        prefetch: Optional[int] = None,
        consumer_tag: Optional[str] = None,
    ) -> Consumer:
        self._check_open()
        return self.broker.consume(queue, auto_ack, prefetch, consumer_tag, owner=self.id)

    def get(self, queue: str, auto_ack: bool = True) -> Optional[Delivery]:
        self._check_open()
        return self.broker.get(queue, auto_ack, owner=self.id)

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._check_open()
        self.broker.ack(delivery_tag, multiple)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        self._check_open()
        self.broker.nack(delivery_tag, requeue, multiple)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.broker.close_connection(self.id)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
