"""Sync engine: one active provider per session and its polling loop.

States::

    Idle -> Connecting -> Active -> Disconnecting -> Idle
                                 -> Degraded      -> Idle

At most one provider is ever Connecting or Active.  Asking for provider B
while A is Connecting or Active first walks A through Disconnecting to Idle;
only then does B enter Connecting.

Each poll tick runs as its own task on a fixed cadence: a slow fetch does
not delay the next tick, so ticks may overlap.  Disconnecting cancels the
timer but never an in-flight tick; a tick whose provider is no longer the
active one (checked through a generation counter) drops its result.

Tick failures are logged and the loop carries on, except an auth failure
that a refresh cannot fix (AuthExpiredError, NoRefreshTokenError), which
moves the session through Degraded to Idle and marks the device
disconnected.

Every OAuth connect carries its own random callback ``state``; a redirect
is honored only while that connect is still pending and echoes it back.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from athlete_sync.wearables.aggregator import MetricsAggregator
from athlete_sync.wearables.base import (
    CanonicalMetricsRecord,
    ConnectionHandle,
    DeviceConnection,
    ProviderAdapter,
    ProviderId,
    TokenRecord,
)
from athlete_sync.wearables.errors import (
    AuthExpiredError,
    NetworkError,
    NoRefreshTokenError,
    WearableSyncError,
)
from athlete_sync.wearables.sync.metrics_store import MetricsStore
from athlete_sync.wearables.sync.remote_bridge import RemoteSyncBridge
from athlete_sync.wearables.token_store import TokenStore

logger = logging.getLogger("athlete_sync.sync.engine")

StateListener = Callable[["SyncState", "ProviderId | None"], None]


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTING = "disconnecting"
    DEGRADED = "degraded"


@dataclass
class PendingConnect:
    """A connect in progress.

    Attributes:
        provider_id:       Provider being connected.
        authorization_url: Consent URL to open (OAuth providers only).
        task:              Resolves to the ConnectionHandle once connected.
        callback_state:    Value the OAuth redirect must echo back as ``state``.
    """

    provider_id: ProviderId
    authorization_url: str | None
    task: asyncio.Task
    callback_state: str | None = None


class SyncEngine:
    """Per-session state machine driving one provider at a time.

    Usage::

        engine = SyncEngine("acct-1", adapters, token_store, store, bridge=bridge)
        pending = await engine.start_connect(ProviderId.CLOUD_FITNESS)
        # send the user to pending.authorization_url
        await pending.task
        ...
        await engine.disconnect()
    """

    def __init__(
        self,
        account_id: str,
        adapters: dict[ProviderId, ProviderAdapter],
        token_store: TokenStore,
        store: MetricsStore,
        bridge: RemoteSyncBridge | None = None,
        aggregator: MetricsAggregator | None = None,
        poll_interval: float | Callable[[ProviderId], float] = 5.0,
        redirect_uri: Callable[[ProviderId], str] | None = None,
        skip_overlapping_ticks: bool = False,
    ) -> None:
        """Initialize the engine in Idle.

        Args:
            account_id:             Key for the remote "latest" document.
            adapters:               One adapter per supported provider.
            token_store:            Source of access tokens for each fetch.
            store:                  Receives every normalized record.
            bridge:                 Remote mirror; None disables pushing.
            aggregator:             Payload normalizer.
            poll_interval:          Seconds between tick starts, or a function
                                    of the provider returning them.
            redirect_uri:           OAuth redirect URI per provider.
            skip_overlapping_ticks: Skip a tick while the previous one is
                                    still in flight.  Off by default.
        """
        self._account_id = account_id
        self._adapters = adapters
        self._token_store = token_store
        self._store = store
        self._bridge = bridge
        self._aggregator = aggregator or MetricsAggregator()
        self._poll_interval = poll_interval
        self._redirect_uri = redirect_uri
        self._skip_overlapping = skip_overlapping_ticks

        self._state = SyncState.IDLE
        self._active: ProviderId | None = None
        self._generation = 0
        self._pending: PendingConnect | None = None
        self._poll_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._listeners: list[StateListener] = []
        self._connections = {pid: DeviceConnection(provider_id=pid) for pid in adapters}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def active_provider(self) -> ProviderId | None:
        return self._active

    @property
    def store(self) -> MetricsStore:
        return self._store

    def adapter(self, provider_id: ProviderId) -> ProviderAdapter:
        return self._adapters[provider_id]

    def devices(self) -> list[DeviceConnection]:
        """Connection status for every supported provider."""
        return [self._connections[pid] for pid in self._adapters]

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(state, provider)`` after every transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def start_connect(self, provider_id: ProviderId) -> PendingConnect:
        """Begin connecting ``provider_id``.

        Any provider already Connecting or Active is fully disconnected
        first.  The returned task resolves once the adapter connects and
        polling has started; it raises the adapter's connect error after
        the engine has fallen back to Idle.

        Raises:
            KeyError: No adapter for ``provider_id``.
        """
        adapter = self._adapters[provider_id]
        if self._state is not SyncState.IDLE:
            logger.info(
                "[%s] Handing off from %s to %s",
                self._account_id,
                self._active.value if self._active else None,
                provider_id.value,
            )
            await self.disconnect()

        self._generation += 1
        generation = self._generation
        self._active = provider_id
        self._set_state(SyncState.CONNECTING)

        authorization_url = callback_state = None
        if self._redirect_uri is not None:
            callback_state = make_callback_state(self._account_id)
            authorization_url = adapter.authorization_url(
                self._redirect_uri(provider_id), state=callback_state
            )

        task = asyncio.create_task(self._complete_connect(adapter, generation))
        task.add_done_callback(_log_connect_outcome)
        self._pending = PendingConnect(provider_id, authorization_url, task, callback_state)
        return self._pending

    async def connect(self, provider_id: ProviderId) -> ConnectionHandle:
        """Connect and wait for the result."""
        pending = await self.start_connect(provider_id)
        return await pending.task

    def accepts_callback(self, provider_id: ProviderId, state: str) -> bool:
        """True if an OAuth redirect with this ``state`` completes the pending connect."""
        pending = self._pending
        return (
            pending is not None
            and pending.provider_id is provider_id
            and pending.callback_state is not None
            and not pending.task.done()
            and secrets.compare_digest(pending.callback_state.encode(), state.encode())
        )

    async def disconnect(self) -> None:
        """Stop polling, clear metrics, and return to Idle.  Idempotent."""
        provider_id = self._active
        if self._state is SyncState.IDLE and provider_id is None:
            return

        self._set_state(SyncState.DISCONNECTING)
        self._generation += 1
        generation = self._generation
        await self._cancel_poll_timer()
        if self._generation != generation:
            return
        self._pending = None

        if provider_id is not None:
            await self._adapters[provider_id].disconnect()
            if self._generation != generation:
                return
            self._connections[provider_id].connected = False

        self._store.clear()
        self._store.connected_device = None
        self._active = None
        self._set_state(SyncState.IDLE)
        logger.info("[%s] Disconnected %s", self._account_id, provider_id.value if provider_id else None)

    async def stop(self) -> None:
        """Shut down on process exit: cancel timers and in-flight ticks.

        Metrics and the persisted connected device are left as they are.
        """
        self._generation += 1
        await self._cancel_poll_timer()
        if self._pending is not None and not self._pending.task.done():
            self._pending.task.cancel()
        for task in list(self._in_flight):
            task.cancel()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> CanonicalMetricsRecord | None:
        """Run one tick against the active provider.

        Errors are contained: they are logged and None is returned.

        Returns:
            The store's current record after the tick, or None if the tick
            produced nothing (idle, failed, or superseded).
        """
        provider_id = self._active
        generation = self._generation
        if self._state is not SyncState.ACTIVE or provider_id is None:
            return None

        try:
            return await self._poll(provider_id, generation)
        except (AuthExpiredError, NoRefreshTokenError) as exc:
            logger.warning("[%s] %s: re-authorization required (%s)", self._account_id, provider_id.value, exc)
            if self._is_current(provider_id, generation):
                await self._degrade(provider_id)
        except WearableSyncError as exc:
            logger.warning(
                "[%s] Poll tick failed for %s: %s: %s",
                self._account_id,
                provider_id.value,
                type(exc).__name__,
                exc,
            )
        except Exception:
            logger.exception("[%s] Unexpected poll tick failure for %s", self._account_id, provider_id.value)
        return None

    async def _poll(
        self, provider_id: ProviderId, generation: int
    ) -> CanonicalMetricsRecord | None:
        adapter = self._adapters[provider_id]
        token: TokenRecord | None = None
        if adapter.REQUIRES_TOKEN:
            token = self._token_store.get_token(provider_id)

        raw = await adapter.fetch_sample(token)
        if not self._is_current(provider_id, generation):
            logger.debug("[%s] Dropping late sample from %s", self._account_id, provider_id.value)
            return None

        records = self._aggregator.normalize(provider_id, raw)
        if not records:
            return None

        self._store.extend(records)
        self._connections[provider_id].last_sync_at = datetime.now(timezone.utc)
        latest = self._store.current()

        if self._bridge is not None:
            try:
                await self._bridge.push(self._account_id, latest)
            except NetworkError as exc:
                logger.warning("[%s] Remote push failed: %s", self._account_id, exc)
        return latest

    def _interval_for(self, provider_id: ProviderId) -> float:
        if callable(self._poll_interval):
            return self._poll_interval(provider_id)
        return self._poll_interval

    async def _poll_loop(self, provider_id: ProviderId, generation: int) -> None:
        interval = self._interval_for(provider_id)
        while self._generation == generation:
            if self._skip_overlapping and self._in_flight:
                logger.debug("[%s] Previous tick still in flight; skipping", self._account_id)
            else:
                task = asyncio.create_task(self.poll_once())
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _complete_connect(
        self, adapter: ProviderAdapter, generation: int
    ) -> ConnectionHandle:
        provider_id = adapter.PROVIDER_ID
        try:
            handle = await adapter.connect()
        except WearableSyncError:
            if self._generation == generation:
                self._pending = None
                self._active = None
                self._set_state(SyncState.IDLE)
            raise

        if self._generation != generation:
            # Superseded while connecting; the newer flow owns the session.
            await adapter.disconnect()
            return handle

        if handle.token and self._token_store.get_token(provider_id) is None:
            self._token_store.save(provider_id, TokenRecord(access_token=handle.token))

        self._pending = None
        self._connections[provider_id].connected = True
        self._store.connected_device = provider_id.value
        self._set_state(SyncState.ACTIVE)
        self._poll_task = asyncio.create_task(self._poll_loop(provider_id, generation))
        logger.info("[%s] Connected %s", self._account_id, provider_id.value)
        return handle

    async def _degrade(self, provider_id: ProviderId) -> None:
        self._set_state(SyncState.DEGRADED)
        self._generation += 1
        generation = self._generation
        await self._cancel_poll_timer()
        if self._generation != generation:
            # A disconnect or new connect took over while we were waiting.
            return
        await self._adapters[provider_id].disconnect()
        if self._generation != generation:
            return
        self._connections[provider_id].connected = False
        self._store.connected_device = None
        self._active = None
        self._set_state(SyncState.IDLE)

    async def _cancel_poll_timer(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        current = asyncio.current_task()
        task.cancel()
        if task is not current:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _is_current(self, provider_id: ProviderId, generation: int) -> bool:
        return (
            self._state is SyncState.ACTIVE
            and self._active is provider_id
            and self._generation == generation
        )

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        logger.info(
            "[%s] State -> %s (%s)",
            self._account_id,
            state.value,
            self._active.value if self._active else "-",
        )
        for listener in list(self._listeners):
            try:
                listener(state, self._active)
            except Exception:
                logger.exception("State listener failed")


def make_callback_state(account_id: str) -> str:
    """OAuth ``state`` for one connect attempt: ``<account_id>.<nonce>``."""
    return f"{account_id}.{secrets.token_urlsafe(16)}"


def account_from_callback_state(state: str) -> str:
    """Account id a callback ``state`` was issued for ("" if it has no nonce)."""
    account_id, sep, _ = state.rpartition(".")
    return account_id if sep else ""


def _log_connect_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("Connect did not complete: %s: %s", type(exc).__name__, exc)
