"""
Durable topology store.

A broker created with a store persists what RabbitMQ would keep across a
restart:

  * durable exchanges,
  * durable, non-exclusive queues,
  * bindings whose exchange and queue are both persisted,
  * persistent messages sitting in a persisted queue (until acked/dropped).

A new broker built on the same store reloads that state at construction.
MemoryStore keeps everything in-process, which is enough to exercise restart
semantics in tests; infra.store.PostgreSQLStore is the database-backed
implementation.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List

from minibroker.models import Binding, Exchange, Message, Queue


@dataclass
class Snapshot:
    """Everything a store holds, in declaration order."""

    exchanges: List[Exchange] = field(default_factory=list)
    queues: List[Queue] = field(default_factory=list)
    bindings: List[Binding] = field(default_factory=list)
    messages: Dict[str, List[Message]] = field(default_factory=dict)


class TopologyStore(ABC):
    """Abstract persistence for durable topology and persistent messages."""

    @abstractmethod
    def save_exchange(self, exchange: Exchange) -> None:
        pass

    @abstractmethod
    def delete_exchange(self, name: str) -> None:
        pass

    @abstractmethod
    def save_queue(self, queue: Queue) -> None:
        pass

    @abstractmethod
    def delete_queue(self, name: str) -> None:
        """Remove a queue together with its bindings and messages."""
        pass

    @abstractmethod
    def save_binding(self, binding: Binding) -> None:
        pass

    @abstractmethod
    def delete_binding(self, binding: Binding) -> None:
        pass

    @abstractmethod
    def save_message(self, queue: str, message: Message) -> None:
        pass

    @abstractmethod
    def delete_message(self, queue: str, message_id: str) -> None:
        """Remove a message copy. Unknown ids are ignored."""
        pass

    @abstractmethod
    def load(self) -> Snapshot:
        pass

    def close(self) -> None:
        """Release any underlying connection."""
        pass


class MemoryStore(TopologyStore):
    """In-process store. Survives broker instances, not the process."""

    def __init__(self):
        self._exchanges: "OrderedDict[str, Exchange]" = OrderedDict()
        self._queues: "OrderedDict[str, Queue]" = OrderedDict()
        self._bindings: "OrderedDict[Binding, None]" = OrderedDict()
        self._messages: Dict[str, "OrderedDict[str, Message]"] = {}
        self._lock = threading.RLock()

    def save_exchange(self, exchange: Exchange) -> None:
        with self._lock:
            self._exchanges[exchange.name] = exchange

    def delete_exchange(self, name: str) -> None:
        with self._lock:
            self._exchanges.pop(name, None)
            for binding in [b for b in self._bindings if b.exchange == name]:
                del self._bindings[binding]

    def save_queue(self, queue: Queue) -> None:
        with self._lock:
            self._queues[queue.name] = Queue(
                name=queue.name,
                durable=queue.durable,
                exclusive=queue.exclusive,
                auto_delete=queue.auto_delete,
            )
            self._messages.setdefault(queue.name, OrderedDict())

    def delete_queue(self, name: str) -> None:
        with self._lock:
            self._queues.pop(name, None)
            self._messages.pop(name, None)
            for binding in [b for b in self._bindings if b.queue == name]:
                del self._bindings[binding]

    def save_binding(self, binding: Binding) -> None:
        with self._lock:
            self._bindings[binding] = None

    def delete_binding(self, binding: Binding) -> None:
        with self._lock:
            self._bindings.pop(binding, None)

    def save_message(self, queue: str, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(queue, OrderedDict())[message.message_id] = message

    def delete_message(self, queue: str, message_id: str) -> None:
        with self._lock:
            self._messages.get(queue, {}).pop(message_id, None)

    def message_count(self, queue: str) -> int:
        with self._lock:
            return len(self._messages.get(queue, {}))

    def load(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                exchanges=list(self._exchanges.values()),
                queues=list(self._queues.values()),
                bindings=list(self._bindings),
                messages={name: list(msgs.values()) for name, msgs in self._messages.items()},
            )
