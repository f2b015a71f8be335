"""Current record and rolling history for one sync session.

The store is injected into every consumer (engine, routes, remote bridge
subscription) and notifies subscribers after each change.  It keeps a
local persistent mirror of ``{connected_device, current, history}`` so a
restarted process shows the last known values immediately; the mirror is
never treated as a source of truth across devices.

History is kept in ascending ``timestamp`` order whatever order records
arrive in, so overlapping poll ticks and remote echoes can be applied in
any sequence.  A record whose timestamp is already present replaces the
stored one.

Inside a running event loop the mirror is written on a worker thread, and
changes made while a write is in flight are coalesced into the next one.
Outside a loop it is written immediately.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from typing import Callable

from athlete_sync.wearables.base import CanonicalMetricsRecord, now_millis
from athlete_sync.wearables.errors import MalformedResponseError
from athlete_sync.wearables.storage import LocalStorage

logger = logging.getLogger("athlete_sync.sync.metrics_store")

DEFAULT_CAPACITY = 30

MetricsListener = Callable[[CanonicalMetricsRecord], None]


class MetricsStore:
    """In-memory metrics state with a local persistent mirror.

    Usage::

        store = MetricsStore(LocalStorage(path), namespace="acct-1")
        unsubscribe = store.subscribe(lambda record: print(record.heart_rate))
        store.append(record)
        store.current()
    """

    def __init__(
        self,
        storage: LocalStorage | None = None,
        namespace: str = "default",
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        """Initialize the store, restoring the mirror when one exists.

        Args:
            storage:   Local persistent storage; None keeps nothing on disk.
            namespace: Key suffix separating accounts sharing one storage file.
            capacity:  Rolling history length.
            clock:     Epoch-millis clock used to stamp ``last_updated``.
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._storage = storage
        self._key = f"metrics:{namespace}"
        self._capacity = capacity
        self._clock = clock
        self._history: list[CanonicalMetricsRecord] = []
        self._current = CanonicalMetricsRecord.empty()
        self._connected_device: str | None = None
        self._listeners: list[MetricsListener] = []
        self._cleared_at: int | None = None
        self._unsaved: dict | None = None
        self._save_task: asyncio.Task | None = None
        self._restore()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current(self) -> CanonicalMetricsRecord:
        """Last known record, or the "no data yet" sentinel."""
        return self._current

    def history(self) -> list[CanonicalMetricsRecord]:
        """Rolling history, oldest first."""
        return list(self._history)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def connected_device(self) -> str | None:
        return self._connected_device

    @connected_device.setter
    def connected_device(self, value: str | None) -> None:
        self._connected_device = value
        self._persist()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: CanonicalMetricsRecord) -> CanonicalMetricsRecord:
        """Stamp ``last_updated`` and add the record to history.

        Returns:
            The stamped record as stored.
        """
        stamped = record.stamped(self._clock())
        self._insert(stamped)
        self._changed()
        return stamped

    def extend(self, records: list[CanonicalMetricsRecord]) -> list[CanonicalMetricsRecord]:
        """Append several records with one stamp, one write and one notification."""
        if not records:
            return []
        at = self._clock()
        stamped = [r.stamped(at) for r in records]
        for record in stamped:
            self._insert(record)
        self._changed()
        return stamped

    def apply_remote(self, record: CanonicalMetricsRecord) -> bool:
        """Apply a record that arrived through the remote subscription.

        Only a record newer than ``current()`` (by timestamp, then
        ``last_updated``) is applied, so echoes of this session's own
        pushes and stale deliveries are dropped.  A record last updated
        before the most recent ``clear()`` is dropped too, so a late echo
        cannot refill a store that a disconnect just emptied.  The remote
        ``last_updated`` is kept as is.

        Returns:
            True if the store changed.
        """
        if not record.is_newer_than(self._current):
            logger.debug("Dropping stale or echoed remote record ts=%d", record.timestamp)
            return False
        if self._cleared_at is not None and record.last_updated <= self._cleared_at:
            logger.debug("Dropping remote record written before clear ts=%d", record.timestamp)
            return False
        self._insert(record)
        self._changed()
        return True

    def clear(self) -> None:
        """Reset to the sentinel and empty the history."""
        self._cleared_at = self._clock()
        self._history = []
        self._current = CanonicalMetricsRecord.empty()
        self._changed()

    def subscribe(self, listener: MetricsListener) -> Callable[[], None]:
        """Call ``listener(current)`` after every change.

        Returns:
            A function that removes the listener.  Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def flush(self) -> None:
        """Wait until the latest state has reached local storage."""
        if self._save_task is not None:
            await self._save_task

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _insert(self, record: CanonicalMetricsRecord) -> None:
        keys = [r.timestamp for r in self._history]
        index = bisect.bisect_left(keys, record.timestamp)
        if index < len(self._history) and self._history[index].timestamp == record.timestamp:
            self._history[index] = record
        else:
            self._history.insert(index, record)

        overflow = len(self._history) - self._capacity
        if overflow > 0:
            del self._history[:overflow]

        self._current = self._history[-1]

    def _changed(self) -> None:
        self._persist()
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception:
                logger.exception("Metrics listener failed")

    def _persist(self) -> None:
        if self._storage is None:
            return
        mirror = {
            "connected_device": self._connected_device,
            "current": None if self._current.is_sentinel else self._current.to_document(),
            "history": [r.to_document() for r in self._history],
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._storage.set(self._key, mirror)
            return
        self._unsaved = mirror
        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._save_pending())

    async def _save_pending(self) -> None:
        while self._unsaved is not None:
            mirror, self._unsaved = self._unsaved, None
            try:
                await asyncio.to_thread(self._storage.set, self._key, mirror)
            except OSError as exc:
                logger.warning("Could not write metrics mirror %s: %s", self._key, exc)

    def _restore(self) -> None:
        if self._storage is None:
            return
        mirror = self._storage.get(self._key)
        if not isinstance(mirror, dict):
            return
        try:
            history = [CanonicalMetricsRecord.from_document(d) for d in mirror.get("history") or []]
            current = mirror.get("current")
            self._current = (
                CanonicalMetricsRecord.from_document(current)
                if current
                else CanonicalMetricsRecord.empty()
            )
        except MalformedResponseError as exc:
            logger.warning("Ignoring unreadable metrics mirror %s: %s", self._key, exc)
            self._current = CanonicalMetricsRecord.empty()
            return
        history.sort(key=lambda r: r.timestamp)
        self._history = history[-self._capacity :]
        self._connected_device = mirror.get("connected_device")
