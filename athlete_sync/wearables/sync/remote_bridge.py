"""Mirror the latest metrics record to the shared document store.

Each account has one ``metrics_latest`` document.  ``push`` overwrites it;
``subscribe`` delivers every change, including this session's own writes
echoed back.  Consumers must tolerate those echoes (MetricsStore does, via
``apply_remote``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import asyncpg

from athlete_sync.services.document_store import DocumentStore
from athlete_sync.wearables.base import CanonicalMetricsRecord
from athlete_sync.wearables.errors import MalformedResponseError, NetworkError

logger = logging.getLogger("athlete_sync.sync.remote_bridge")

# Failures a document store can raise for a transient outage.
_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError, OSError)

RESOURCE_TYPE = "metrics_latest"

RecordCallback = Callable[[CanonicalMetricsRecord], None]


class RemoteSyncBridge:
    """Push/subscribe wrapper over a DocumentStore."""

    def __init__(self, store: DocumentStore, resource_type: str = RESOURCE_TYPE) -> None:
        self._store = store
        self._resource_type = resource_type

    async def push(self, account_id: str, record: CanonicalMetricsRecord) -> None:
        """Overwrite the account's latest record.

        The caller logs a failure and does not retry; the next poll tick
        pushes again.

        Raises:
            NetworkError: The store could not be written.
        """
        try:
            await self._store.write(account_id, self._resource_type, record.to_document())
        except _STORE_ERRORS as exc:
            raise NetworkError(f"Remote push failed: {exc}") from exc

    async def subscribe(
        self, account_id: str, on_update: RecordCallback
    ) -> Callable[[], Awaitable[None]]:
        """Invoke ``on_update(record)`` whenever the remote record changes.

        Documents that do not decode are logged and skipped.

        Returns:
            An async unsubscribe handle.

        Raises:
            NetworkError: The subscription could not be registered.
        """

        def _on_document(document: dict) -> None:
            try:
                record = CanonicalMetricsRecord.from_document(document)
            except MalformedResponseError as exc:
                logger.warning("Skipping malformed remote record for %s: %s", account_id, exc)
                return
            on_update(record)

        try:
            return await self._store.subscribe(account_id, self._resource_type, _on_document)
        except _STORE_ERRORS as exc:
            raise NetworkError(f"Remote subscribe failed: {exc}") from exc
