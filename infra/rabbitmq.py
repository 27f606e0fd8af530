"""
Real RabbitMQ broker adapter.

Implements the same operations as minibroker.broker.InMemoryBroker so that
the scenario services can run against a live RabbitMQ server without any
code changes; only the broker instance differs.

Interface contract
------------------
  declare_exchange(name, kind, durable)
  declare_queue(name, durable, exclusive, auto_delete) -> str
  bind(queue, exchange, routing_key) / unbind / delete_queue
  publish(exchange, routing_key, payload, persistent, content_type, mandatory, headers)
  consume(queue, auto_ack, prefetch) -> RabbitMQConsumer (get / ack / nack / cancel)
  get(queue, auto_ack) -> Delivery | None
  ack / nack / reject
  queue_depth(queue), consumer_count(queue), purge(queue)

Broker-side refusals (ChannelClosedByBroker) are translated to the
minibroker.errors classes with the same meaning, and a mandatory publish
that RabbitMQ returns as unroutable raises minibroker.errors.UnroutableError.
Connecting retries with exponential backoff before giving up.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

import pika
import pika.exceptions

from minibroker.config import Settings, load_settings
from minibroker.errors import (
    AccessRefusedError,
    BrokerError,
    ConflictError,
    NotFoundError,
    ResourceLockedError,
    UnroutableError,
)
from minibroker.models import DEFAULT_CONTENT_TYPE, Delivery, ExchangeKind, Message, encode_payload

logger = logging.getLogger(__name__)

# AMQP reply codes -> broker errors
_REPLY_CODES = {
    403: AccessRefusedError,
    404: NotFoundError,
    405: ResourceLockedError,
    406: ConflictError,
}


def _broker_error(exc: pika.exceptions.ChannelClosedByBroker) -> BrokerError:
    error_cls = _REPLY_CODES.get(exc.reply_code, BrokerError)
    return error_cls(exc.reply_text)


def _to_delivery(method, properties, body: bytes, queue: str, consumer_tag: str, auto_ack: bool) -> Delivery:
    timestamp = datetime.now(timezone.utc)
    if properties.timestamp:
        timestamp = datetime.fromtimestamp(properties.timestamp, timezone.utc)
    message = Message(
        body=body,
        exchange=method.exchange,
        routing_key=method.routing_key,
        content_type=properties.content_type or DEFAULT_CONTENT_TYPE,
        persistent=properties.delivery_mode == 2,
        headers=dict(properties.headers or {}),
        message_id=properties.message_id or str(uuid.uuid4()),
        timestamp=timestamp,
    )
    return Delivery(
        delivery_tag=method.delivery_tag,
        consumer_tag=consumer_tag,
        queue=queue,
        message=message,
        redelivered=bool(method.redelivered),
        auto_ack=auto_ack,
    )


class RabbitMQConsumer:
    """
    Wraps BlockingChannel.consume() to match minibroker's Consumer interface.

    Each consumer owns its channel: pika allows one consume generator per
    channel and basic.qos is channel-wide. get(timeout) polls the generator
    in poll_interval slices, so a worker loop written against the in-memory
    Consumer works unchanged. cancel() closes the channel.
    """

    def __init__(
        self,
        channel,
        queue: str,
        auto_ack: bool,
        prefetch: int,
        poll_interval: float = 0.1,
    ):
        self._channel = channel
        self.queue = queue
        self.auto_ack = auto_ack
        self.prefetch = prefetch
        self.consumer_tag = f"ctag-{uuid.uuid4().hex[:12]}"
        self._poll_interval = poll_interval
        self._stream = channel.consume(
            queue=queue,
            auto_ack=auto_ack,
            inactivity_timeout=poll_interval,
            consumer_tag=self.consumer_tag,
        )
        self._cancelled = False

    def get(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._cancelled:
            try:
                method, properties, body = next(self._stream)
            except pika.exceptions.ChannelClosedByBroker as exc:
                self._cancelled = True
                raise _broker_error(exc) from exc
            if method is not None:
                return _to_delivery(method, properties, body, self.queue, self.consumer_tag, self.auto_ack)
            if deadline is not None and time.monotonic() >= deadline:
                return None
        return None

    def __iter__(self) -> Iterator[Delivery]:
        while True:
            delivery = self.get()
            if delivery is None:
                return
            yield delivery

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._channel.basic_ack(delivery_tag=delivery_tag, multiple=multiple)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        self._channel.basic_nack(delivery_tag=delivery_tag, multiple=multiple, requeue=requeue)

    def cancel(self) -> None:
        """Cancel the consumer; RabbitMQ requeues whatever it had not acked."""
        if self._cancelled:
            return
        self._cancelled = True
        requeued = 0
        if self._channel.is_open:
            requeued = self._channel.cancel()
            self._channel.close()
        logger.info("Cancelled consumer on %s; %d pending message(s) rejected", self.queue, requeued)

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class RabbitMQBroker:
    """
    Live RabbitMQ broker implementing the InMemoryBroker operations.

    Uses one pika BlockingConnection. Topology, publish and get() share one
    channel in publisher-confirm mode; every consume() opens a channel of
    its own. All operations are synchronous and must be called from a
    single thread, as pika's blocking adapter requires.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or load_settings()
        self._params = pika.URLParameters(self.settings.amqp_url)
        self._params.heartbeat = 0
        self._params.blocked_connection_timeout = 5
        self._sleep = sleep
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the connection, retrying with exponential backoff."""
        attempts = max(1, self.settings.connect_attempts)
        delay = self.settings.retry_delay
        for attempt in range(1, attempts + 1):
            try:
                self._connection = pika.BlockingConnection(self._params)
                break
            except pika.exceptions.AMQPConnectionError as exc:
                if attempt == attempts:
                    logger.error("Giving up connecting to RabbitMQ after %d attempt(s)", attempts)
                    raise
                logger.warning(
                    "RabbitMQ connection attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt, attempts, exc, delay,
                )
                self._sleep(delay)
                delay *= 2
        self._open_channel()
        logger.info("Connected to RabbitMQ at %s:%s", self._params.host, self._params.port)

    def _open_channel(self) -> None:
        self._channel = self._connection.channel()
        self._channel.confirm_delivery()  # block on publish until broker ACKs

    def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            self._connection.close()

    def _call(self, fn: Callable, **kwargs) -> Any:
        """Run a channel operation, translating broker refusals."""
        try:
            return fn(**kwargs)
        except pika.exceptions.ChannelClosedByBroker as exc:
            # the broker closes the channel on any refusal; reopen for the next call
            self._open_channel()
            raise _broker_error(exc) from exc

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def declare_exchange(self, name: str, kind="direct", durable: bool = False) -> None:
        kind = ExchangeKind.parse(kind)
        self._call(self._channel.exchange_declare, exchange=name, exchange_type=kind.value, durable=durable)

    def declare_queue(
        self,
        name: str = "",
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        result = self._call(
            self._channel.queue_declare,
            queue=name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
        )
        return result.method.queue

    def delete_queue(self, name: str) -> int:
        result = self._call(self._channel.queue_delete, queue=name)
        return result.method.message_count

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._call(self._channel.queue_bind, queue=queue, exchange=exchange, routing_key=routing_key)

    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._call(self._channel.queue_unbind, queue=queue, exchange=exchange, routing_key=routing_key)

    # ------------------------------------------------------------------
    # Publish / consume
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
    ) -> None:
        body, content_type = encode_payload(payload, content_type)
        properties = pika.BasicProperties(
            content_type=content_type,
            delivery_mode=2 if persistent else 1,
            headers=headers or None,
            message_id=str(uuid.uuid4()),
            timestamp=int(time.time()),
        )
        try:
            self._call(
                self._channel.basic_publish,
                exchange=exchange,
                routing_key=routing_key,
                body=body,
                properties=properties,
                mandatory=mandatory,
            )
        except pika.exceptions.UnroutableError as exc:
            raise UnroutableError(exchange, routing_key) from exc

    def consume(self, queue: str, auto_ack: bool = False, prefetch: Optional[int] = None) -> RabbitMQConsumer:
        if prefetch is None:
            prefetch = self.settings.default_prefetch
        channel = self._connection.channel()
        try:
            if not auto_ack:
                channel.basic_qos(prefetch_count=prefetch)
            return RabbitMQConsumer(channel, queue, auto_ack, prefetch)
        except pika.exceptions.ChannelClosedByBroker as exc:
            raise _broker_error(exc) from exc

    def get(self, queue: str, auto_ack: bool = True) -> Optional[Delivery]:
        method, properties, body = self._call(self._channel.basic_get, queue=queue, auto_ack=auto_ack)
        if method is None:
            return None
        return _to_delivery(method, properties, body, queue, "", auto_ack)

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        self._channel.basic_ack(delivery_tag=delivery_tag, multiple=multiple)

    def nack(self, delivery_tag: int, requeue: bool = True, multiple: bool = False) -> None:
        self._channel.basic_nack(delivery_tag=delivery_tag, multiple=multiple, requeue=requeue)

    def reject(self, delivery_tag: int, requeue: bool = True) -> None:
        self._channel.basic_reject(delivery_tag=delivery_tag, requeue=requeue)

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    def queue_depth(self, queue: str) -> int:
        result = self._call(self._channel.queue_declare, queue=queue, passive=True)
        return result.method.message_count

    def consumer_count(self, queue: str) -> int:
        result = self._call(self._channel.queue_declare, queue=queue, passive=True)
        return result.method.consumer_count

    def purge(self, queue: str) -> int:
        result = self._call(self._channel.queue_purge, queue=queue)
        return result.method.message_count
