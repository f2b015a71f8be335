"""Keyed document store.

One JSON document per ``(account_id, resource_type)``.  A write replaces the
whole document; subscribers receive the full document after every write,
from any process sharing the store.

Two implementations:

* ``InMemoryDocumentStore`` — single process; used for tests and when no
  ``DATABASE_URL`` is configured.
* ``PostgresDocumentStore`` — ``asyncpg`` pool over a ``documents`` table,
  with change fan-out through ``LISTEN``/``NOTIFY`` on one dedicated
  listener connection.

Expected schema::

    CREATE TABLE documents (
        account_id    TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        body          JSONB NOT NULL,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (account_id, resource_type)
    );
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import asyncpg

logger = logging.getLogger("athlete_sync.db")

DocumentCallback = Callable[[dict], None]
Unsubscribe = Callable[[], Awaitable[None]]

NOTIFY_CHANNEL = "document_changes"


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}, updated_at = NOW()"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


class DocumentStore(ABC):
    """Abstract keyed document store."""

    @abstractmethod
    async def read(self, account_id: str, resource_type: str) -> dict | None:
        """Return the stored document, or None."""

    @abstractmethod
    async def write(self, account_id: str, resource_type: str, document: dict) -> None:
        """Replace the document and notify subscribers."""

    @abstractmethod
    async def subscribe(
        self, account_id: str, resource_type: str, callback: DocumentCallback
    ) -> Unsubscribe:
        """Register ``callback(document)`` for every change.

        Returns:
            An async function removing the subscription.
        """

    async def ping(self) -> bool:
        """Lightweight connectivity probe."""
        return True

    async def close(self) -> None:
        return None


def _deliver_one(key: tuple[str, str], callback: DocumentCallback, document: dict) -> None:
    try:
        callback(document)
    except Exception:
        logger.exception("Document subscriber failed for %s/%s", *key)


class _Subscribers:
    """Callback registry keyed by (account_id, resource_type)."""

    def __init__(self) -> None:
        self._callbacks: dict[tuple[str, str], list[DocumentCallback]] = {}

    def add(self, key: tuple[str, str], callback: DocumentCallback) -> Callable[[], None]:
        self._callbacks.setdefault(key, []).append(callback)

        def remove() -> None:
            callbacks = self._callbacks.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._callbacks.pop(key, None)

        return remove

    def snapshot(self, key: tuple[str, str]) -> list[DocumentCallback]:
        return list(self._callbacks.get(key, []))

    def dispatch(self, key: tuple[str, str], document: dict) -> None:
        for callback in self.snapshot(key):
            _deliver_one(key, callback, document)

    def __bool__(self) -> bool:
        return bool(self._callbacks)


class InMemoryDocumentStore(DocumentStore):
    """Process-local store.

    Subscribers are invoked on a later event-loop iteration, never inside
    ``write``; the current document (if any) is delivered once on subscribe.
    """

    def __init__(self) -> None:
        self._documents: dict[tuple[str, str], dict] = {}
        self._subscribers = _Subscribers()

    async def read(self, account_id: str, resource_type: str) -> dict | None:
        document = self._documents.get((account_id, resource_type))
        return json.loads(json.dumps(document)) if document is not None else None

    async def write(self, account_id: str, resource_type: str, document: dict) -> None:
        key = (account_id, resource_type)
        # Round-trip through JSON so callers cannot mutate the stored copy.
        stored = json.loads(json.dumps(document))
        self._documents[key] = stored
        self._schedule(key, stored)

    async def subscribe(
        self, account_id: str, resource_type: str, callback: DocumentCallback
    ) -> Unsubscribe:
        key = (account_id, resource_type)
        remove = self._subscribers.add(key, callback)
        if key in self._documents:
            asyncio.get_running_loop().call_soon(_deliver_one, key, callback, self._documents[key])

        async def unsubscribe() -> None:
            remove()

        return unsubscribe

    def _schedule(self, key: tuple[str, str], document: dict) -> None:
        # Subscribers registered after this write get the document from subscribe().
        loop = asyncio.get_running_loop()
        for callback in self._subscribers.snapshot(key):
            loop.call_soon(_deliver_one, key, callback, document)


class PostgresDocumentStore(DocumentStore):
    """``asyncpg``-backed store with LISTEN/NOTIFY fan-out.

    Usage::

        store = await PostgresDocumentStore.connect(settings.database_url)
        await store.write("acct-1", "metrics_latest", {...})
        ...
        await store.close()

    NOTIFY payloads carry only the key; listeners re-read the row so large
    documents never hit the 8000-byte NOTIFY limit.
    """

    TABLE = "documents"
    _UPSERT = build_upsert_query(
        TABLE,
        ["account_id", "resource_type", "body"],
        conflict_columns=["account_id", "resource_type"],
    )

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._subscribers = _Subscribers()
        self._listener: asyncpg.Connection | None = None
        self._listener_lock = asyncio.Lock()
        self._deliveries: set[asyncio.Task] = set()

    @classmethod
    async def connect(
        cls, dsn: str, min_size: int = 2, max_size: int = 10
    ) -> PostgresDocumentStore:
        """Create the connection pool.  Call once at app startup."""
        pool = await asyncpg.create_pool(
            dsn, min_size=min_size, max_size=max_size, command_timeout=30
        )
        logger.info("Document store pool initialized (min=%d, max=%d)", min_size, max_size)
        return cls(pool)

    async def read(self, account_id: str, resource_type: str) -> dict | None:
        async with self._pool.acquire() as conn:
            body = await conn.fetchval(
                f"SELECT body FROM {self.TABLE} WHERE account_id = $1 AND resource_type = $2",
                account_id,
                resource_type,
            )
        return self._decode(body)

    async def write(self, account_id: str, resource_type: str, document: dict) -> None:
        payload = json.dumps({"account_id": account_id, "resource_type": resource_type})
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(self._UPSERT, account_id, resource_type, json.dumps(document))
                await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, payload)

    async def subscribe(
        self, account_id: str, resource_type: str, callback: DocumentCallback
    ) -> Unsubscribe:
        await self._ensure_listener()
        remove = self._subscribers.add((account_id, resource_type), callback)

        async def unsubscribe() -> None:
            remove()

        return unsubscribe

    async def ping(self) -> bool:
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True

    async def close(self) -> None:
        if self._listener is not None:
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._pool.release(self._listener)
            self._listener = None
        await self._pool.close()
        logger.info("Document store pool closed")

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _ensure_listener(self) -> None:
        async with self._listener_lock:
            if self._listener is not None:
                return
            conn = await self._pool.acquire()
            await conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
            self._listener = conn
            logger.info("Listening on %s", NOTIFY_CHANNEL)

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            key_data = json.loads(payload)
            key = (key_data["account_id"], key_data["resource_type"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed notification on %s: %r", channel, payload)
            return
        if not self._subscribers:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(key))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, key: tuple[str, str]) -> None:
        try:
            document = await self.read(*key)
        except (asyncpg.PostgresError, OSError) as exc:
            logger.warning("Could not re-read %s/%s after notify: %s", *key, exc)
            return
        if document is not None:
            self._subscribers.dispatch(key, document)

    @staticmethod
    def _decode(body: Any) -> dict | None:
        if body is None:
            return None
        if isinstance(body, str):
            body = json.loads(body)
        return body if isinstance(body, dict) else None
