"""Channel brokers carrying encoded events between producers and consumers.

Every backend offers the same at-least-once contract: ``receive`` leases the
oldest due message of a channel, ``ack`` removes it, ``nack`` either puts it
back (optionally delayed) with ``attempt`` incremented or drops it. Due times
are epoch seconds.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from inference_pipeline.settings import resolve_env


@dataclass
class BrokerMessage:
    message_id: str
    channel: str
    body: str
    attempt: int = 0
    due_at: float = 0.0


class BrokerBackend(Protocol):
    def publish(
        self,
        *,
        channel: str,
        body: str,
        available_at: datetime | None = None,
        attempt: int = 0,
    ) -> BrokerMessage: ...

    def receive(self, *, channel: str) -> BrokerMessage | None: ...

    def ack(self, *, message_id: str) -> None: ...

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> BrokerMessage | None: ...

    def pending_count(self, *, channel: str) -> int: ...

    def list_channels(self) -> list[str]: ...

    def reset(self) -> None: ...


def _due_at(available_at: datetime | None) -> float:
    return available_at.timestamp() if isinstance(available_at, datetime) else time.time()


def _delayed(delay_ms: int) -> float:
    return time.time() + max(0, int(delay_ms)) / 1000.0


class InMemoryBroker:
    """Process-local broker. A nacked message goes back to the head of its channel."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._pending: dict[str, list[BrokerMessage]] = {}
        self._leased: dict[str, BrokerMessage] = {}

    def publish(
        self,
        *,
        channel: str,
        body: str,
        available_at: datetime | None = None,
        attempt: int = 0,
    ) -> BrokerMessage:
        message = BrokerMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            channel=channel,
            body=body,
            attempt=max(0, int(attempt)),
            due_at=_due_at(available_at),
        )
        with self._lock:
            self._pending.setdefault(channel, []).append(message)
        return message

    def receive(self, *, channel: str) -> BrokerMessage | None:
        now = time.time()
        with self._lock:
            queue = self._pending.get(channel, [])
            for index, message in enumerate(queue):
                if message.due_at <= now:
                    del queue[index]
                    self._leased[message.message_id] = message
                    return message
        return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._leased.pop(message_id, None)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> BrokerMessage | None:
        with self._lock:
            message = self._leased.pop(message_id, None)
            if message is None:
                return None
            message.attempt += 1
            if requeue:
                message.due_at = _delayed(delay_ms)
                self._pending.setdefault(message.channel, []).insert(0, message)
            return message

    def pending_count(self, *, channel: str) -> int:
        with self._lock:
            return len(self._pending.get(channel, []))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._leased)

    def list_channels(self) -> list[str]:
        with self._lock:
            return sorted(channel for channel, queue in self._pending.items() if queue)

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._leased.clear()


_SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pipeline_messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL UNIQUE,
        channel TEXT NOT NULL,
        body TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 0,
        due_at REAL NOT NULL,
        leased INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pipeline_messages_due ON pipeline_messages(channel, leased, seq)",
)


class SqliteBroker:
    """Single-file broker that survives restarts; delivery order follows insertion order."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction() as conn:
            for statement in _SQLITE_SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _message(row: sqlite3.Row) -> BrokerMessage:
        return BrokerMessage(
            message_id=row["message_id"],
            channel=row["channel"],
            body=row["body"],
            attempt=int(row["attempt"]),
            due_at=float(row["due_at"]),
        )

    def publish(
        self,
        *,
        channel: str,
        body: str,
        available_at: datetime | None = None,
        attempt: int = 0,
    ) -> BrokerMessage:
        message = BrokerMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            channel=channel,
            body=body,
            attempt=max(0, int(attempt)),
            due_at=_due_at(available_at),
        )
        with self._lock, self._transaction() as conn:
            conn.execute(
                "INSERT INTO pipeline_messages(message_id, channel, body, attempt, due_at) VALUES (?, ?, ?, ?, ?)",
                (message.message_id, message.channel, message.body, message.attempt, message.due_at),
            )
        return message

    def receive(self, *, channel: str) -> BrokerMessage | None:
        with self._lock, self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM pipeline_messages
                WHERE channel = ? AND leased = 0 AND due_at <= ?
                ORDER BY seq
                LIMIT 1
                """,
                (channel, time.time()),
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE pipeline_messages SET leased = 1 WHERE seq = ?", (row["seq"],))
            return self._message(row)

    def ack(self, *, message_id: str) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute("DELETE FROM pipeline_messages WHERE message_id = ? AND leased = 1", (message_id,))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> BrokerMessage | None:
        with self._lock, self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_messages WHERE message_id = ? AND leased = 1",
                (message_id,),
            ).fetchone()
            if row is None:
                return None
            message = self._message(row)
            message.attempt += 1
            if requeue:
                message.due_at = _delayed(delay_ms)
                conn.execute(
                    "UPDATE pipeline_messages SET leased = 0, attempt = ?, due_at = ? WHERE seq = ?",
                    (message.attempt, message.due_at, row["seq"]),
                )
            else:
                conn.execute("DELETE FROM pipeline_messages WHERE seq = ?", (row["seq"],))
            return message

    def pending_count(self, *, channel: str) -> int:
        with self._lock, self._transaction() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM pipeline_messages WHERE channel = ? AND leased = 0",
                (channel,),
            ).fetchone()
        return int(count)

    def list_channels(self) -> list[str]:
        with self._lock, self._transaction() as conn:
            rows = conn.execute(
                "SELECT DISTINCT channel FROM pipeline_messages WHERE leased = 0 ORDER BY channel"
            ).fetchall()
        return [row["channel"] for row in rows]

    def reset(self) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute("DELETE FROM pipeline_messages")


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for INFER_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisBroker:
    """Redis broker built on one sorted set per channel, scored by due time.

    Message ids come from a namespace counter, so messages due at the same
    instant are still delivered in publish order. A consumer owns a message
    only once its ``ZREM`` succeeds, which keeps concurrent receivers from
    leasing the same message twice.
    """

    def __init__(self, *, dsn: str, namespace: str = "infer") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis broker")
        self._ns = namespace.strip() or "infer"
        self._lock = threading.RLock()
        self._client = _import_redis().Redis.from_url(dsn.strip(), decode_responses=True)

    def _key(self, *parts: str) -> str:
        return ":".join((self._ns, *parts))

    def _due_key(self, channel: str) -> str:
        return self._key("channel", channel, "pending")

    def _leased_key(self, channel: str) -> str:
        return self._key("channel", channel, "inflight")

    def _load(self, message_id: str) -> BrokerMessage | None:
        raw = self._client.get(self._key("msg", message_id))
        if not raw:
            return None
        return BrokerMessage(**json.loads(raw))

    def _store(self, message: BrokerMessage) -> None:
        self._client.set(self._key("msg", message.message_id), json.dumps(asdict(message), separators=(",", ":")))

    def _schedule(self, message: BrokerMessage) -> None:
        self._store(message)
        self._client.zadd(self._due_key(message.channel), {message.message_id: message.due_at})

    def publish(
        self,
        *,
        channel: str,
        body: str,
        available_at: datetime | None = None,
        attempt: int = 0,
    ) -> BrokerMessage:
        with self._lock:
            seq = int(self._client.incr(self._key("seq")))
            message = BrokerMessage(
                message_id=f"msg_{seq:012d}",
                channel=channel,
                body=body,
                attempt=max(0, int(attempt)),
                due_at=_due_at(available_at),
            )
            self._schedule(message)
            self._client.sadd(self._key("channels"), channel)
            return message

    def receive(self, *, channel: str) -> BrokerMessage | None:
        due_key = self._due_key(channel)
        with self._lock:
            while True:
                ready = self._client.zrangebyscore(due_key, "-inf", time.time(), start=0, num=1)
                if not ready:
                    return None
                message_id = ready[0]
                if not self._client.zrem(due_key, message_id):
                    continue
                message = self._load(message_id)
                if message is None:
                    continue
                self._client.sadd(self._leased_key(channel), message_id)
                return message

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            message = self._load(message_id)
            if message is None or not self._client.srem(self._leased_key(message.channel), message_id):
                return
            self._client.delete(self._key("msg", message_id))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> BrokerMessage | None:
        with self._lock:
            message = self._load(message_id)
            if message is None or not self._client.srem(self._leased_key(message.channel), message_id):
                return None
            message.attempt += 1
            if requeue:
                message.due_at = _delayed(delay_ms)
                self._schedule(message)
            else:
                self._client.delete(self._key("msg", message_id))
            return message

    def pending_count(self, *, channel: str) -> int:
        with self._lock:
            return int(self._client.zcard(self._due_key(channel)))

    def list_channels(self) -> list[str]:
        with self._lock:
            channels = self._client.smembers(self._key("channels"))
            return sorted(channel for channel in channels if int(self._client.zcard(self._due_key(channel))) > 0)

    def reset(self) -> None:
        with self._lock:
            for channel in self._client.smembers(self._key("channels")):
                due_key, leased_key = self._due_key(channel), self._leased_key(channel)
                message_ids = list(self._client.zrangebyscore(due_key, "-inf", "+inf"))
                message_ids += list(self._client.smembers(leased_key))
                for message_id in message_ids:
                    self._client.delete(self._key("msg", message_id))
                self._client.delete(due_key, leased_key)
            self._client.delete(self._key("channels"), self._key("seq"))


def create_broker_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryBroker | SqliteBroker | RedisBroker:
    env = resolve_env(environ)
    backend = env.get("INFER_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryBroker()
    if backend == "sqlite":
        return SqliteBroker(env.get("INFER_QUEUE_SQLITE_PATH", ".runtime/infer_broker.sqlite3"))
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when INFER_QUEUE_BACKEND=redis")
        return RedisBroker(dsn=dsn, namespace=env.get("INFER_QUEUE_KEY_PREFIX", "infer"))
    raise RuntimeError(f"unsupported queue backend: {backend}")
