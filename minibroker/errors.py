"""
Broker exceptions.

Every error the in-memory broker raises derives from BrokerError so callers
can catch the whole family at a collaborator boundary. The names mirror the
AMQP reply codes a real RabbitMQ server would answer with for the same
mistake (PRECONDITION_FAILED, NOT_FOUND, RESOURCE_LOCKED, ...).
"""


class BrokerError(Exception):
    """Base class for all broker errors."""


class ConflictError(BrokerError):
    """An exchange or queue was redeclared with incompatible attributes."""


class NotFoundError(BrokerError):
    """An operation referenced an exchange or queue that is not declared."""


class UnroutableError(BrokerError):
    """A mandatory publish matched no queue."""

    def __init__(self, exchange: str, routing_key: str):
        super().__init__(
            f"Message published to exchange {exchange!r} with routing key "
            f"{routing_key!r} matched no queue"
        )
        self.exchange = exchange
        self.routing_key = routing_key


class UnknownDeliveryTagError(BrokerError):
    """ack/nack referenced a delivery tag that is unknown or already settled."""

    def __init__(self, delivery_tag: int):
        super().__init__(f"Unknown delivery tag {delivery_tag}")
        self.delivery_tag = delivery_tag


class ResourceLockedError(BrokerError):
    """A connection touched a queue that is exclusive to another connection."""


class AccessRefusedError(BrokerError):
    """The default exchange cannot be redeclared or explicitly bound."""


class ConnectionClosedError(BrokerError):
    """An operation was attempted on a closed connection."""
