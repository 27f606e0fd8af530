"""
The three classic messaging tutorials.

  Work queue   TaskProducer -> task_queue (default exchange) -> TaskWorker x N
               Each "." in a task costs one second of simulated work.
  Pub/Sub      NewsPublisher -> news_broadcast (fanout) -> every NewsSubscriber
  Routing      LogProducer -> logs_direct (direct, key = severity) -> LogConsumer
               bound only to the severities it asked for
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from minibroker.models import DEFAULT_EXCHANGE
from scenarios.topologies import (
    LOGS_EXCHANGE,
    NEWS_EXCHANGE,
    SEVERITIES,
    TASK_QUEUE,
    declare_logs,
    declare_news,
    declare_work_queue,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def work_seconds(task: str) -> int:
    return task.count(".")


# ----------------------------------------------------------------------
# Work queue
# ----------------------------------------------------------------------

class TaskProducer:
    def __init__(self, broker):
        self.broker = broker
        declare_work_queue(broker)

    def send(self, task: str) -> Optional[Set[str]]:
        routed = self.broker.publish(DEFAULT_EXCHANGE, TASK_QUEUE, task, persistent=True)
        logger.info("Sent task %r", task)
        return routed


class TaskWorker:
    """
    Competing worker: manual ack, one unacknowledged task at a time, so a
    busy worker is skipped and the next task goes to an idle one.
    """

    def __init__(self, broker, name: str = "worker", sleep: Sleep = asyncio.sleep):
        self.broker = broker
        self.name = name
        self._sleep = sleep
        declare_work_queue(broker)
        self.consumer = broker.consume(TASK_QUEUE, auto_ack=False, prefetch=1)
        self.completed: List[str] = []

    async def process_one(self) -> Optional[str]:
        """Run one task and ack it. Returns the task, or None if none was waiting."""
        delivery = self.consumer.get(timeout=0)
        if delivery is None:
            return None
        task = delivery.message.text()
        logger.info("%s received task %r", self.name, task)
        await self._sleep(work_seconds(task))
        self.consumer.ack(delivery.delivery_tag)
        self.completed.append(task)
        logger.info("%s done with %r", self.name, task)
        return task

    async def process_all(self) -> int:
        count = 0
        while await self.process_one() is not None:
            count += 1
        return count

    def close(self) -> None:
        self.consumer.cancel()


# ----------------------------------------------------------------------
# Publish / subscribe
# ----------------------------------------------------------------------

class NewsPublisher:
    def __init__(self, broker):
        self.broker = broker
        declare_news(broker)

    def publish(self, headline: str) -> Optional[Set[str]]:
        routed = self.broker.publish(NEWS_EXCHANGE, "", headline)
        logger.info("Broadcast %r", headline)
        return routed


class NewsSubscriber:
    """Owns an exclusive server-named queue; sees only news published after it subscribed."""

    def __init__(self, broker):
        self.broker = broker
        declare_news(broker)
        self.queue = broker.declare_queue("", exclusive=True)
        broker.bind(self.queue, NEWS_EXCHANGE)
        self.consumer = broker.consume(self.queue, auto_ack=True)

    def receive_all(self) -> List[str]:
        headlines = []
        while True:
            delivery = self.consumer.get(timeout=0)
            if delivery is None:
                return headlines
            headlines.append(delivery.message.text())

    def close(self) -> None:
        self.consumer.cancel()


# ----------------------------------------------------------------------
# Routing
# ----------------------------------------------------------------------

class LogProducer:
    def __init__(self, broker):
        self.broker = broker
        declare_logs(broker)

    def emit(self, severity: str, text: str) -> Optional[Set[str]]:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity {severity!r}; expected one of {SEVERITIES}")
        routed = self.broker.publish(LOGS_EXCHANGE, severity, text)
        logger.debug("Emitted [%s] %s", severity, text)
        return routed


class LogConsumer:
    """Binds one exclusive queue to logs_direct once per requested severity."""

    def __init__(self, broker, severities: Iterable[str]):
        self.broker = broker
        self.severities = tuple(severities)
        if not self.severities:
            raise ValueError("LogConsumer needs at least one severity")
        declare_logs(broker)
        self.queue = broker.declare_queue("", exclusive=True)
        for severity in self.severities:
            broker.bind(self.queue, LOGS_EXCHANGE, severity)
        self.consumer = broker.consume(self.queue, auto_ack=True)

    def receive_all(self) -> List[Tuple[str, str]]:
        """Return (severity, text) for every waiting log line."""
        lines = []
        while True:
            delivery = self.consumer.get(timeout=0)
            if delivery is None:
                return lines
            lines.append((delivery.routing_key, delivery.message.text()))

    def close(self) -> None:
        self.consumer.cancel()
