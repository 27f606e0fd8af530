"""
Monitoring API.

A Flask application exposing the live state of an InMemoryBroker:

  GET /api/status
    Totals across the broker: queues, exchanges, consumers, ready and
    unacked messages, plus publish/route/ack counters.

  GET /api/queues
    One entry per queue: ready messages, unacked, consumers, attributes and
    a state of "running" (has consumers) or "idle".

  GET /api/exchanges
    One entry per declared exchange with its kind and bindings.

Every endpoint requires a Bearer token.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from flask import Flask, jsonify, request

from minibroker.broker import InMemoryBroker
from minibroker.config import load_settings

logger = logging.getLogger(__name__)


def create_app(broker: InMemoryBroker, tokens: Optional[Iterable[str]] = None) -> Flask:
    """
    Create the monitoring application.

    Args:
        broker: The broker to report on.
        tokens: Accepted Bearer tokens. Defaults to MONITOR_API_TOKENS.
    """
    app = Flask(__name__)
    valid_tokens = set(tokens) if tokens is not None else set(load_settings().monitor_tokens)
    started_at = datetime.now(timezone.utc)

    def _authenticate() -> tuple:
        """
        Validate the Bearer token.
        Returns (status_code, error_message_or_None).
        """
        auth = request.headers.get("Authorization", "")
        if not auth:
            logger.warning("Auth failed: missing header ip=%s", request.remote_addr)
            return 401, "Missing Authorization header"
        parts = auth.split(" ", 1)
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            logger.warning("Auth failed: malformed header ip=%s", request.remote_addr)
            return 401, "Invalid Authorization format; expected 'Bearer <token>'"
        if parts[1] not in valid_tokens:
            logger.warning("Auth failed: invalid token ip=%s", request.remote_addr)
            return 403, "Invalid or expired token"
        return 200, None

    @app.before_request
    def require_token():
        status, err = _authenticate()
        if status != 200:
            return jsonify({"error": err}), status
        return None

    @app.route("/api/status", methods=["GET"])
    def status():
        queues = broker.queue_info()
        now = datetime.now(timezone.utc)
        return jsonify({
            "queues": len(queues),
            "exchanges": len(broker.exchange_info()),
            "consumers": sum(q["consumers"] for q in queues),
            "total_messages": sum(q["messages"] for q in queues),
            "unacked_messages": sum(q["unacked"] for q in queues),
            "counters": broker.stats(),
            "uptime_seconds": round((now - started_at).total_seconds(), 3),
            "last_update": now.isoformat(),
        }), 200

    @app.route("/api/queues", methods=["GET"])
    def queues():
        items = sorted(broker.queue_info(), key=lambda q: q["name"])
        return jsonify({"queues": items, "count": len(items)}), 200

    @app.route("/api/exchanges", methods=["GET"])
    def exchanges():
        items = sorted(broker.exchange_info(), key=lambda e: e["name"])
        return jsonify({"exchanges": items, "count": len(items)}), 200

    return app
