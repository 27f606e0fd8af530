"""
PostgreSQL-backed topology store.

Implements minibroker.store.TopologyStore on top of psycopg2 so that a
broker's durable exchanges, queues, bindings and persistent messages
survive a process restart, not just a broker instance.

Schema
------
  broker_exchanges
    name         VARCHAR(255) PRIMARY KEY
    kind         VARCHAR(16)
    durable      BOOLEAN

  broker_queues
    name         VARCHAR(255) PRIMARY KEY
    durable      BOOLEAN
    auto_delete  BOOLEAN
    created_at   TIMESTAMPTZ DEFAULT NOW()

  broker_bindings
    queue, exchange, routing_key     composite PRIMARY KEY

  broker_messages
    id           SERIAL PRIMARY KEY   <- enqueue order
    queue        VARCHAR(255)
    message_id   VARCHAR(36)          <- UNIQUE per queue
    message      JSONB                <- Message.to_dict()
"""

import json
import logging
from typing import Optional

import psycopg2
import psycopg2.extras

from minibroker.config import Settings, load_settings
from minibroker.models import Binding, Exchange, ExchangeKind, Message, Queue
from minibroker.store import Snapshot, TopologyStore

logger = logging.getLogger(__name__)

_TABLES = ("broker_messages", "broker_bindings", "broker_queues", "broker_exchanges")


class PostgreSQLStore(TopologyStore):
    """
    Thin adapter around psycopg2 implementing TopologyStore.

    Writes are idempotent (ON CONFLICT), so re-declaring a durable queue or
    re-saving a message that is already stored is harmless. Any failed
    statement rolls the transaction back and re-raises.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or load_settings()
        self._conn_params = dict(
            host=settings.postgres_host,
            port=settings.postgres_port,
            dbname=settings.postgres_db,
            user=settings.postgres_user,
            password=settings.postgres_password,
            connect_timeout=5,
        )
        self._conn = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self._conn = psycopg2.connect(**self._conn_params)
        self._ensure_schema()
        logger.info("Connected to PostgreSQL store at %s:%s", self._conn_params["host"], self._conn_params["port"])

    def close(self) -> None:
        if self._conn:
            self._conn.close()

    def _ensure_schema(self) -> None:
        with self._conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS broker_exchanges (
                    name     VARCHAR(255) PRIMARY KEY,
                    kind     VARCHAR(16)  NOT NULL,
                    durable  BOOLEAN      NOT NULL
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS broker_queues (
                    name         VARCHAR(255) PRIMARY KEY,
                    durable      BOOLEAN      NOT NULL,
                    auto_delete  BOOLEAN      NOT NULL,
                    created_at   TIMESTAMPTZ  DEFAULT NOW()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS broker_bindings (
                    queue        VARCHAR(255) NOT NULL,
                    exchange     VARCHAR(255) NOT NULL,
                    routing_key  VARCHAR(255) NOT NULL,
                    PRIMARY KEY (queue, exchange, routing_key)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS broker_messages (
                    id          SERIAL PRIMARY KEY,
                    queue       VARCHAR(255) NOT NULL,
                    message_id  VARCHAR(36)  NOT NULL,
                    message     JSONB        NOT NULL,
                    UNIQUE (queue, message_id)
                )
            """)
        self._conn.commit()

    def _execute(self, sql: str, params: tuple) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql, params)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save_exchange(self, exchange: Exchange) -> None:
        self._execute("""
            INSERT INTO broker_exchanges (name, kind, durable)
            VALUES (%s, %s, %s)
            ON CONFLICT (name) DO UPDATE SET kind = EXCLUDED.kind, durable = EXCLUDED.durable
        """, (exchange.name, exchange.kind.value, exchange.durable))

    def delete_exchange(self, name: str) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute("DELETE FROM broker_bindings WHERE exchange = %s", (name,))
                cur.execute("DELETE FROM broker_exchanges WHERE name = %s", (name,))
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def save_queue(self, queue: Queue) -> None:
        self._execute("""
            INSERT INTO broker_queues (name, durable, auto_delete)
            VALUES (%s, %s, %s)
            ON CONFLICT (name) DO NOTHING
        """, (queue.name, queue.durable, queue.auto_delete))

    def delete_queue(self, name: str) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute("DELETE FROM broker_messages WHERE queue = %s", (name,))
                cur.execute("DELETE FROM broker_bindings WHERE queue = %s", (name,))
                cur.execute("DELETE FROM broker_queues WHERE name = %s", (name,))
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def save_binding(self, binding: Binding) -> None:
        self._execute("""
            INSERT INTO broker_bindings (queue, exchange, routing_key)
            VALUES (%s, %s, %s)
            ON CONFLICT DO NOTHING
        """, (binding.queue, binding.exchange, binding.routing_key))

    def delete_binding(self, binding: Binding) -> None:
        self._execute(
            "DELETE FROM broker_bindings WHERE queue = %s AND exchange = %s AND routing_key = %s",
            (binding.queue, binding.exchange, binding.routing_key),
        )

    def save_message(self, queue: str, message: Message) -> None:
        self._execute("""
            INSERT INTO broker_messages (queue, message_id, message)
            VALUES (%s, %s, %s)
            ON CONFLICT (queue, message_id) DO NOTHING
        """, (queue, message.message_id, json.dumps(message.to_dict())))

    def delete_message(self, queue: str, message_id: str) -> None:
        self._execute(
            "DELETE FROM broker_messages WHERE queue = %s AND message_id = %s",
            (queue, message_id),
        )

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def load(self) -> Snapshot:
        snapshot = Snapshot()
        with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute("SELECT name, kind, durable FROM broker_exchanges ORDER BY name")
            snapshot.exchanges = [
                Exchange(r["name"], ExchangeKind.parse(r["kind"]), r["durable"])
                for r in cur.fetchall()
            ]
            cur.execute("SELECT name, durable, auto_delete FROM broker_queues ORDER BY created_at, name")
            snapshot.queues = [
                Queue(name=r["name"], durable=r["durable"], auto_delete=r["auto_delete"])
                for r in cur.fetchall()
            ]
            cur.execute("SELECT queue, exchange, routing_key FROM broker_bindings ORDER BY queue, exchange")
            snapshot.bindings = [
                Binding(r["queue"], r["exchange"], r["routing_key"])
                for r in cur.fetchall()
            ]
            cur.execute("SELECT queue, message FROM broker_messages ORDER BY id")
            for r in cur.fetchall():
                snapshot.messages.setdefault(r["queue"], []).append(Message.from_dict(r["message"]))
        self._conn.commit()
        return snapshot

    def message_count(self, queue: str) -> int:
        with self._conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM broker_messages WHERE queue = %s", (queue,))
            (count,) = cur.fetchone()
        self._conn.commit()
        return count

    # ------------------------------------------------------------------
    # Utility
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Remove all rows, used between tests for isolation."""
        with self._conn.cursor() as cur:
            cur.execute(f"TRUNCATE TABLE {', '.join(_TABLES)}")
        self._conn.commit()
