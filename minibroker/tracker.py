"""
Delivery and acknowledgment tracker.

Holds the ready messages of every queue, the consumers registered on it and
the deliveries each consumer has not settled yet.

Per consumer the tracker moves between three states:

  idle       no unacknowledged delivery
  delivered  unacked < prefetch, more messages may be dispatched
  blocked    unacked == prefetch, nothing is dispatched until an ack/nack

Dispatch pops the head of the queue (FIFO) and hands it to the next consumer
with spare capacity in round-robin order, which is what spreads a work queue
across competing workers. Requeued messages go back to the head so they are
redelivered before anything that was never delivered. Cancelling a consumer
requeues every delivery it still holds; auto-ack deliveries count as
consumed the moment they are dispatched and are never requeued.

Locking: each queue has its own Condition. The delivery-tag index has its
own lock, always taken after (never before) a queue lock, and no code path
holds two queue locks at once.
"""

import itertools
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Deque, Dict, Iterator, List, NamedTuple, Optional

from minibroker.errors import NotFoundError, UnknownDeliveryTagError
from minibroker.models import Delivery, Message

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    message: Message
    seq: int
    redelivered: bool = False


class _QueueState:
    def __init__(self, name: str):
        self.name = name
        self.cond = threading.Condition()
        self.ready: Deque[_Entry] = deque()
        self.consumers: List["Consumer"] = []
        self.next_consumer = 0
        self.seq = itertools.count()


class Consumer:
    """
    A consumer registration and the stream of deliveries dispatched to it.

    get() returns the next delivery (blocking up to timeout); iterating over
    the consumer yields deliveries until it is cancelled. Deliveries of a
    manual-ack consumer must be settled with ack()/nack().
    """

    def __init__(
        self,
        tracker: "DeliveryTracker",
        state: _QueueState,
        consumer_tag: str,
        auto_ack: bool,
        prefetch: int,
        owner: Optional[str] = None,
    ):
        self._tracker = tracker
        self._state = state
        self.consumer_tag = consumer_tag
        self.queue = state.name
        self.auto_ack = auto_ack
        self.prefetch = prefetch
        self.owner = owner
        self._buffer: Deque[Delivery] = deque()
        # delivery_tag -> (delivery, entry), in dispatch order
        self._unacked: "OrderedDict[int, tuple]" = OrderedDict()
        self._cancelled = False

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    def get(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """
        Return the next delivery, or None if none arrives within timeout or
        the consumer is cancelled. timeout=None blocks indefinitely,
        timeout=0 never blocks.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._state.cond:
            while not self._buffer:
                if self._cancelled:
                    return None
                if deadline is None:
                    self._state.cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._state.cond.wait(remaining)
            return self._buffer.popleft()

    def __iter__(self) -> Iterator[Delivery]:
        while True:
            delivery = self.get()
            if delivery is None:
                return
            yield delivery

    def drain(self) -> List[Delivery]:
        """Return every delivery already dispatched to this consumer without blocking."""
        deliveries = []
        while True:
            delivery = self.get(timeout=0)
            if delivery is None:
                return deliveries
            deliveries.append(delivery)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._tracker.ack(delivery_tag, multiple=multiple)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        self._tracker.nack(delivery_tag, requeue=requeue, multiple=multiple)

    def cancel(self) -> None:
        self._tracker.cancel(self)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    def has_capacity(self) -> bool:
        if self.auto_ack or self.prefetch <= 0:
            return True
        return len(self._unacked) < self.prefetch

    def __enter__(self) -> "Consumer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return (
            f"Consumer(tag={self.consumer_tag!r}, queue={self.queue!r}, "
            f"auto_ack={self.auto_ack}, prefetch={self.prefetch}, unacked={self.unacked_count})"
        )


class DeliveryTracker:
    """
    Per-queue FIFO storage, consumer dispatch and ack bookkeeping.

    on_discard(queue, message) is called whenever a message copy leaves a
    queue for good (acked, auto-acked, dropped by nack or purged), which is
    how the broker keeps a durable store in step. on_cancel(queue, remaining)
    is called after a consumer is cancelled, outside the queue lock.
    """

    def __init__(
        self,
        on_discard: Optional[Callable[[str, Message], None]] = None,
        on_cancel: Optional[Callable[[str, int], None]] = None,
    ):
        self._on_discard = on_discard
        self._on_cancel = on_cancel
        self._queues: Dict[str, _QueueState] = {}
        self._queues_lock = threading.Lock()
        self._tags: Dict[int, Consumer] = {}
        self._tags_lock = threading.Lock()
        self._delivery_tags = itertools.count(1)
        self._consumer_tags = itertools.count(1)
        self._stats = {"delivered": 0, "acked": 0, "requeued": 0, "dropped": 0}
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queue lifecycle
    # ------------------------------------------------------------------

    def add_queue(self, name: str) -> None:
        with self._queues_lock:
            if name not in self._queues:
                self._queues[name] = _QueueState(name)

    def remove_queue(self, name: str) -> int:
        """
        Forget a queue. Its consumers are cancelled without requeue and its
        messages are dropped, including deliveries pulled with get() that
        were never settled. Returns the number of ready messages dropped.
        """
        with self._queues_lock:
            state = self._queues.pop(name, None)
        if state is None:
            return 0
        with state.cond:
            dropped = len(state.ready)
            state.ready.clear()
            for consumer in state.consumers:
                consumer._cancelled = True
                consumer._buffer.clear()
                self._forget_tags(list(consumer._unacked))
                consumer._unacked.clear()
            state.consumers.clear()
            with self._tags_lock:
                pulled = [tag for tag, c in self._tags.items() if c._state is state]
                for tag in pulled:
                    holder = self._tags.pop(tag)
                    holder._unacked.pop(tag, None)
            state.cond.notify_all()
        return dropped

    def _state(self, name: str) -> _QueueState:
        with self._queues_lock:
            state = self._queues.get(name)
        if state is None:
            raise NotFoundError(f"Queue {name!r} not found")
        return state

    # ------------------------------------------------------------------
    # Enqueue / dispatch
    # ------------------------------------------------------------------

    def enqueue(self, queue: str, message: Message) -> None:
        """Append a message copy at the tail of queue and dispatch."""
        state = self._state(queue)
        with state.cond:
            state.ready.append(_Entry(message, next(state.seq)))
            self._dispatch(state)

    def restore(self, queue: str, messages: List[Message]) -> None:
        """Load previously persisted messages, in order, without discarding anything."""
        state = self._state(queue)
        with state.cond:
            for message in messages:
                state.ready.append(_Entry(message, next(state.seq), redelivered=True))
            self._dispatch(state)

    def _next_consumer(self, state: _QueueState) -> Optional[Consumer]:
        count = len(state.consumers)
        for offset in range(count):
            index = (state.next_consumer + offset) % count
            consumer = state.consumers[index]
            if consumer.has_capacity():
                state.next_consumer = (index + 1) % count
                return consumer
        return None

    def _dispatch(self, state: _QueueState) -> None:
        dispatched = 0
        while state.ready:
            consumer = self._next_consumer(state)
            if consumer is None:
                break
            entry = state.ready.popleft()
            delivery = Delivery(
                delivery_tag=next(self._delivery_tags),
                consumer_tag=consumer.consumer_tag,
                queue=state.name,
                message=entry.message,
                redelivered=entry.redelivered,
                auto_ack=consumer.auto_ack,
            )
            consumer._buffer.append(delivery)
            if consumer.auto_ack:
                self._discard(state.name, entry.message)
            else:
                consumer._unacked[delivery.delivery_tag] = (delivery, entry)
                with self._tags_lock:
                    self._tags[delivery.delivery_tag] = consumer
            dispatched += 1
            logger.debug(
                "Dispatched tag=%d queue=%s consumer=%s redelivered=%s",
                delivery.delivery_tag, state.name, consumer.consumer_tag, entry.redelivered,
            )
        if dispatched:
            self._count("delivered", dispatched)
            state.cond.notify_all()

    def _discard(self, queue: str, message: Message) -> None:
        if self._on_discard is not None:
            self._on_discard(queue, message)

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def register(
        self,
        queue: str,
        auto_ack: bool = False,
        prefetch: int = 0,
        consumer_tag: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Consumer:
        """Register a consumer on queue and dispatch any waiting messages to it."""
        if prefetch < 0:
            raise ValueError("prefetch must be >= 0")
        state = self._state(queue)
        tag = consumer_tag or f"ctag-{next(self._consumer_tags)}"
        consumer = Consumer(self, state, tag, auto_ack, prefetch, owner)
        with state.cond:
            state.consumers.append(consumer)
            self._dispatch(state)
        logger.info(
            "Registered consumer %s on queue %s auto_ack=%s prefetch=%d",
            tag, queue, auto_ack, prefetch,
        )
        return consumer

    def cancel(self, consumer: Consumer) -> int:
        """
        Stop dispatching to consumer and requeue everything it has not acked.
        Returns the number of consumers still registered on the queue.
        """
        state = consumer._state
        with state.cond:
            if consumer._cancelled:
                return len(state.consumers)
            consumer._cancelled = True
            registered = consumer in state.consumers
            if registered:
                state.consumers.remove(consumer)
                state.next_consumer = 0
            entries = [entry for _, entry in consumer._unacked.values()]
            self._forget_tags(list(consumer._unacked))
            consumer._unacked.clear()
            consumer._buffer.clear()
            self._requeue(state, entries)
            self._dispatch(state)
            state.cond.notify_all()
            remaining = len(state.consumers)
        if entries:
            logger.info(
                "Consumer %s cancelled on queue %s; requeued %d unacked message(s)",
                consumer.consumer_tag, state.name, len(entries),
            )
        else:
            logger.info("Consumer %s cancelled on queue %s", consumer.consumer_tag, state.name)
        if registered and self._on_cancel is not None:
            self._on_cancel(state.name, remaining)
        return remaining

    def _requeue(self, state: _QueueState, entries: List[_Entry]) -> None:
        """Put entries back at the head of the queue in their original order."""
        for entry in sorted(entries, key=lambda e: e.seq, reverse=True):
            state.ready.appendleft(entry._replace(redelivered=True))
        if entries:
            self._count("requeued", len(entries))

    def _forget_tags(self, tags: List[int]) -> None:
        with self._tags_lock:
            for tag in tags:
                self._tags.pop(tag, None)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(self, delivery_tag: int, multiple: bool) -> tuple:
        """
        Remove delivery_tag (and with multiple, every earlier tag of the same
        consumer) from the unacked set. The caller holds the queue lock.
        """
        with self._tags_lock:
            consumer = self._tags.get(delivery_tag)
        if consumer is None:
            raise UnknownDeliveryTagError(delivery_tag)
        state = consumer._state
        if delivery_tag not in consumer._unacked:
            raise UnknownDeliveryTagError(delivery_tag)
        if multiple:
            tags = [t for t in consumer._unacked if t <= delivery_tag]
        else:
            tags = [delivery_tag]
        entries = [consumer._unacked.pop(t)[1] for t in tags]
        self._forget_tags(tags)
        return state, entries

    def _consumer_state(self, delivery_tag: int) -> _QueueState:
        with self._tags_lock:
            consumer = self._tags.get(delivery_tag)
        if consumer is None:
            raise UnknownDeliveryTagError(delivery_tag)
        return consumer._state

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        """Settle a delivery permanently and dispatch into the freed capacity."""
        state = self._consumer_state(delivery_tag)
        with state.cond:
            state, entries = self._settle(delivery_tag, multiple)
            for entry in entries:
                self._discard(state.name, entry.message)
            self._count("acked", len(entries))
            self._dispatch(state)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        """Requeue a delivery at the head of its queue, or drop it."""
        state = self._consumer_state(delivery_tag)
        with state.cond:
            state, entries = self._settle(delivery_tag, multiple)
            if requeue:
                self._requeue(state, entries)
            else:
                for entry in entries:
                    self._discard(state.name, entry.message)
                self._count("dropped", len(entries))
            self._dispatch(state)
        logger.debug("Nacked tag=%d requeue=%s count=%d", delivery_tag, requeue, len(entries))

    # ------------------------------------------------------------------
    # Pull / maintenance
    # ------------------------------------------------------------------

    def pull(self, queue: str, holder: Consumer) -> Optional[Delivery]:
        """
        Pop the head of queue for a basic.get style pull. holder is an
        unregistered consumer that tracks the delivery until it is settled.
        """
        state = self._state(queue)
        with state.cond:
            if not state.ready:
                return None
            entry = state.ready.popleft()
            delivery = Delivery(
                delivery_tag=next(self._delivery_tags),
                consumer_tag=holder.consumer_tag,
                queue=queue,
                message=entry.message,
                redelivered=entry.redelivered,
                auto_ack=holder.auto_ack,
            )
            if holder.auto_ack:
                self._discard(queue, entry.message)
            else:
                holder._unacked[delivery.delivery_tag] = (delivery, entry)
                with self._tags_lock:
                    self._tags[delivery.delivery_tag] = holder
            self._count("delivered", 1)
            return delivery

    def holder(self, queue: str, auto_ack: bool, owner: Optional[str] = None) -> Consumer:
        """Create an unregistered consumer used to track pulled deliveries."""
        state = self._state(queue)
        return Consumer(self, state, f"get-{next(self._consumer_tags)}", auto_ack, 0, owner)

    def purge(self, queue: str) -> int:
        """Drop every ready message of queue. Unacked deliveries are untouched."""
        state = self._state(queue)
        with state.cond:
            entries = list(state.ready)
            state.ready.clear()
            for entry in entries:
                self._discard(queue, entry.message)
        return len(entries)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def depth(self, queue: str) -> int:
        state = self._state(queue)
        with state.cond:
            return len(state.ready)

    def ready_messages(self, queue: str) -> List[Message]:
        state = self._state(queue)
        with state.cond:
            return [entry.message for entry in state.ready]

    def unacked_count(self, queue: str) -> int:
        with self._tags_lock:
            return sum(1 for consumer in self._tags.values() if consumer.queue == queue)

    def consumer_count(self, queue: str) -> int:
        state = self._state(queue)
        with state.cond:
            return len(state.consumers)

    def consumers(self, queue: str) -> List[Consumer]:
        state = self._state(queue)
        with state.cond:
            return list(state.consumers)

    def _count(self, key: str, amount: int) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)
