"""
Topology and message value types.

Exchanges, queues and bindings are plain dataclasses owned by the topology
registry. Messages are frozen: a publish creates one Message and the router
hands the same immutable object to every matched queue, so each queue holds
an independent reference that no consumer can alter.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

DEFAULT_EXCHANGE = ""
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ExchangeKind(str, Enum):
    """Routing semantics of an exchange."""

    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"

    @classmethod
    def parse(cls, value) -> "ExchangeKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown exchange kind: {value!r}") from None


@dataclass(frozen=True)
class Exchange:
    name: str
    kind: ExchangeKind = ExchangeKind.DIRECT
    durable: bool = False


@dataclass
class Queue:
    """
    A declared queue.

    owner is the id of the connection that declared an exclusive queue and
    is None for shared queues. An auto-delete queue is removed when its last
    consumer cancels; a queue nobody ever consumed from is kept.
    """

    name: str
    durable: bool = False
    exclusive: bool = False
    auto_delete: bool = False
    owner: Optional[str] = None

    def same_attributes(self, durable: bool, exclusive: bool, auto_delete: bool) -> bool:
        return (
            self.durable == durable
            and self.exclusive == exclusive
            and self.auto_delete == auto_delete
        )


@dataclass(frozen=True)
class Binding:
    queue: str
    exchange: str
    routing_key: str = ""


def encode_payload(payload: Any, content_type: Optional[str]) -> tuple:
    """
    Normalise a publish payload to bytes.

    Returns (body, content_type). bytes pass through untouched, str is UTF-8
    encoded and dict/list are JSON encoded, defaulting the content type to
    the matching MIME type when the caller did not set one.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload), content_type or DEFAULT_CONTENT_TYPE
    if isinstance(payload, str):
        return payload.encode("utf-8"), content_type or "text/plain"
    if isinstance(payload, (dict, list)):
        return json.dumps(payload).encode("utf-8"), content_type or "application/json"
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")


@dataclass(frozen=True)
class Message:
    """An immutable published message. headers is a read-only view."""

    body: bytes
    exchange: str = DEFAULT_EXCHANGE
    routing_key: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE
    persistent: bool = False
    headers: Mapping[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for a durable store. The body is hex-encoded so any bytes survive JSON."""
        return {
            "message_id": self.message_id,
            "exchange": self.exchange,
            "routing_key": self.routing_key,
            "content_type": self.content_type,
            "persistent": self.persistent,
            "headers": dict(self.headers),
            "timestamp": self.timestamp.isoformat(),
            "body": self.body.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            body=bytes.fromhex(data["body"]),
            exchange=data.get("exchange", DEFAULT_EXCHANGE),
            routing_key=data.get("routing_key", ""),
            content_type=data.get("content_type", DEFAULT_CONTENT_TYPE),
            persistent=data.get("persistent", False),
            headers=dict(data.get("headers") or {}),
            message_id=data["message_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass(frozen=True)
class Delivery:
    """
    One message handed to one consumer from one queue.

    delivery_tag is unique for the lifetime of the broker, so it is also
    unique within the consumer's channel. redelivered is set when the
    message had already been delivered once and was requeued.
    """

    delivery_tag: int
    consumer_tag: str
    queue: str
    message: Message
    redelivered: bool = False
    auto_ack: bool = False

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def routing_key(self) -> str:
        return self.message.routing_key

    def text(self) -> str:
        return self.message.text()

    def json(self) -> Any:
        return self.message.json()
