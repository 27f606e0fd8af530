"""
Topology registry.

Tracks declared exchanges, queues and the bindings between them. The
registry never moves messages; it only answers "what exists" and "what is
bound to what" for the router and the delivery tracker.

Declarations follow AMQP semantics:

  * redeclaring with identical attributes is a no-op,
  * redeclaring with different attributes raises ConflictError,
  * an empty queue name asks the registry to generate one,
  * the default exchange ("") exists from the start, routes by queue name
    and cannot be redeclared or explicitly bound.
"""

import logging
import threading
import uuid
from typing import Dict, List, Optional

from minibroker.errors import (
    AccessRefusedError,
    ConflictError,
    NotFoundError,
    ResourceLockedError,
)
from minibroker.models import DEFAULT_EXCHANGE, Binding, Exchange, ExchangeKind, Queue

logger = logging.getLogger(__name__)

GENERATED_QUEUE_PREFIX = "amq.gen-"


class TopologyRegistry:
    """Thread-safe registry of exchanges, queues and bindings."""

    def __init__(self):
        self._lock = threading.RLock()
        self._exchanges: Dict[str, Exchange] = {
            DEFAULT_EXCHANGE: Exchange(DEFAULT_EXCHANGE, ExchangeKind.DIRECT, durable=True),
        }
        self._queues: Dict[str, Queue] = {}
        # exchange name -> insertion-ordered set of bindings
        self._bindings: Dict[str, Dict[Binding, None]] = {}

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def declare_exchange(self, name: str, kind="direct", durable: bool = False) -> Exchange:
        """Declare an exchange. Idempotent for identical attributes."""
        kind = ExchangeKind.parse(kind)
        with self._lock:
            if name == DEFAULT_EXCHANGE:
                raise AccessRefusedError("The default exchange cannot be redeclared")
            existing = self._exchanges.get(name)
            if existing is not None:
                if existing.kind != kind or existing.durable != durable:
                    raise ConflictError(
                        f"Exchange {name!r} already declared as "
                        f"kind={existing.kind.value} durable={existing.durable}; "
                        f"got kind={kind.value} durable={durable}"
                    )
                return existing
            exchange = Exchange(name, kind, durable)
            self._exchanges[name] = exchange
            logger.info("Declared exchange %s kind=%s durable=%s", name, kind.value, durable)
            return exchange

    def delete_exchange(self, name: str) -> Exchange:
        with self._lock:
            if name == DEFAULT_EXCHANGE:
                raise AccessRefusedError("The default exchange cannot be deleted")
            exchange = self._exchanges.pop(name, None)
            if exchange is None:
                raise NotFoundError(f"Exchange {name!r} not found")
            self._bindings.pop(name, None)
            logger.info("Deleted exchange %s", name)
            return exchange

    def get_exchange(self, name: str) -> Exchange:
        with self._lock:
            exchange = self._exchanges.get(name)
        if exchange is None:
            raise NotFoundError(f"Exchange {name!r} not found")
        return exchange

    def exchanges(self) -> List[Exchange]:
        with self._lock:
            return list(self._exchanges.values())

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def declare_queue(
        self,
        name: str = "",
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        owner: Optional[str] = None,
    ) -> Queue:
        """
        Declare a queue and return it.

        An empty name generates a unique server-side name. owner identifies
        the declaring connection; it is recorded for exclusive queues and
        checked on every later declaration of the same name.
        """
        with self._lock:
            if not name:
                name = self._generate_queue_name()
            existing = self._queues.get(name)
            if existing is not None:
                self.check_access(existing, owner)
                if not existing.same_attributes(durable, exclusive, auto_delete):
                    raise ConflictError(
                        f"Queue {name!r} already declared with durable={existing.durable} "
                        f"exclusive={existing.exclusive} auto_delete={existing.auto_delete}"
                    )
                return existing
            queue = Queue(
                name=name,
                durable=durable,
                exclusive=exclusive,
                auto_delete=auto_delete,
                owner=owner if exclusive else None,
            )
            self._queues[name] = queue
            logger.info(
                "Declared queue %s durable=%s exclusive=%s auto_delete=%s",
                name, durable, exclusive, auto_delete,
            )
            return queue

    def _generate_queue_name(self) -> str:
        while True:
            name = GENERATED_QUEUE_PREFIX + uuid.uuid4().hex[:22]
            if name not in self._queues:
                return name

    def delete_queue(self, name: str) -> Queue:
        """Remove a queue and every binding that targets it."""
        with self._lock:
            queue = self._queues.pop(name, None)
            if queue is None:
                raise NotFoundError(f"Queue {name!r} not found")
            for bindings in self._bindings.values():
                for binding in [b for b in bindings if b.queue == name]:
                    del bindings[binding]
            logger.info("Deleted queue %s", name)
            return queue

    def get_queue(self, name: str) -> Queue:
        with self._lock:
            queue = self._queues.get(name)
        if queue is None:
            raise NotFoundError(f"Queue {name!r} not found")
        return queue

    def has_queue(self, name: str) -> bool:
        with self._lock:
            return name in self._queues

    def queues(self) -> List[Queue]:
        with self._lock:
            return list(self._queues.values())

    @staticmethod
    def check_access(queue: Queue, owner: Optional[str]) -> None:
        """Raise ResourceLockedError if queue is exclusive to another connection."""
        if queue.exclusive and queue.owner is not None and queue.owner != owner:
            raise ResourceLockedError(
                f"Queue {queue.name!r} is exclusive to another connection"
            )

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> bool:
        """
        Bind queue to exchange. Returns False when the binding already existed.
        """
        with self._lock:
            if exchange == DEFAULT_EXCHANGE:
                raise AccessRefusedError("Queues cannot be bound to the default exchange")
            if exchange not in self._exchanges:
                raise NotFoundError(f"Exchange {exchange!r} not found")
            if queue not in self._queues:
                raise NotFoundError(f"Queue {queue!r} not found")
            binding = Binding(queue, exchange, routing_key)
            bindings = self._bindings.setdefault(exchange, {})
            if binding in bindings:
                return False
            bindings[binding] = None
            logger.info("Bound queue %s to exchange %s key=%r", queue, exchange, routing_key)
            return True

    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> bool:
        with self._lock:
            bindings = self._bindings.get(exchange, {})
            binding = Binding(queue, exchange, routing_key)
            if binding not in bindings:
                return False
            del bindings[binding]
            logger.info("Unbound queue %s from exchange %s key=%r", queue, exchange, routing_key)
            return True

    def bindings_for(self, exchange: str) -> List[Binding]:
        with self._lock:
            return list(self._bindings.get(exchange, {}))

    def bindings(self, queue: Optional[str] = None) -> List[Binding]:
        with self._lock:
            result = [b for bindings in self._bindings.values() for b in bindings]
        if queue is not None:
            result = [b for b in result if b.queue == queue]
        return result
