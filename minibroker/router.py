"""
Message router.

Given an exchange name and a routing key, computes the set of destination
queues from the current topology:

  fanout  every bound queue; the routing key is ignored
  direct  bindings whose key equals the routing key exactly
  topic   dot-separated segments, '*' matches exactly one segment and
          '#' matches zero or more segments

The default exchange ("") delivers straight to the queue named by the
routing key. A queue is returned at most once even when several of its
bindings match.
"""

import logging
from typing import Callable, Dict, Set

from minibroker.errors import UnroutableError
from minibroker.models import DEFAULT_EXCHANGE, ExchangeKind
from minibroker.topology import TopologyRegistry

logger = logging.getLogger(__name__)


def direct_matches(binding_key: str, routing_key: str) -> bool:
    return binding_key == routing_key


def fanout_matches(binding_key: str, routing_key: str) -> bool:
    return True


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    Return True if routing_key matches the topic binding pattern.

    >>> topic_matches("order.amazon.*", "order.amazon.us")
    True
    >>> topic_matches("order.#", "order")
    True
    >>> topic_matches("order.amazon.us", "order.amazon.us.extra")
    False
    """
    words = pattern.split(".")
    segments = routing_key.split(".")
    n, m = len(words), len(segments)

    # matched[i][j]: words[i:] matches segments[j:]
    matched = [[False] * (m + 1) for _ in range(n + 1)]
    matched[n][m] = True
    for i in range(n - 1, -1, -1):
        word = words[i]
        for j in range(m, -1, -1):
            if word == "#":
                matched[i][j] = matched[i + 1][j] or (j < m and matched[i][j + 1])
            elif j < m and (word == "*" or word == segments[j]):
                matched[i][j] = matched[i + 1][j + 1]
    return matched[0][0]


MATCHERS: Dict[ExchangeKind, Callable[[str, str], bool]] = {
    ExchangeKind.DIRECT: direct_matches,
    ExchangeKind.FANOUT: fanout_matches,
    ExchangeKind.TOPIC: topic_matches,
}


class Router:
    """Resolves (exchange, routing key) to destination queue names."""

    def __init__(self, topology: TopologyRegistry):
        self.topology = topology

    def route(self, exchange: str, routing_key: str, mandatory: bool = False) -> Set[str]:
        """
        Return the names of every queue that should receive a copy.

        Raises NotFoundError for an undeclared exchange and UnroutableError
        when mandatory is set and nothing matched.
        """
        if exchange == DEFAULT_EXCHANGE:
            queues = {routing_key} if self.topology.has_queue(routing_key) else set()
        else:
            kind = self.topology.get_exchange(exchange).kind
            matches = MATCHERS[kind]
            queues = {
                binding.queue
                for binding in self.topology.bindings_for(exchange)
                if matches(binding.routing_key, routing_key)
            }

        if not queues:
            if mandatory:
                raise UnroutableError(exchange, routing_key)
            logger.debug("Dropped unroutable message exchange=%r key=%r", exchange, routing_key)
        return queues
