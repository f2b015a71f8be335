"""Per-account sync sessions.

A session bundles everything one account's sync needs: its OAuth message
channel, token store, metrics store, remote subscription and engine.
Sessions are created lazily on first use and live until shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from athlete_sync.config import Settings
from athlete_sync.services.document_store import DocumentStore
from athlete_sync.wearables.adapters import (
    ActivityServiceAdapter,
    BluetoothAdapter,
    CloudFitnessAdapter,
)
from athlete_sync.wearables.adapters.bluetooth import DevicePairer, static_pairer
from athlete_sync.wearables.aggregator import MetricsAggregator
from athlete_sync.wearables.base import ProviderAdapter, ProviderId
from athlete_sync.wearables.config_loader import SyncConfig, get_sync_config
from athlete_sync.wearables.errors import NetworkError
from athlete_sync.wearables.storage import LocalStorage
from athlete_sync.wearables.sync.engine import SyncEngine
from athlete_sync.wearables.sync.metrics_store import MetricsStore
from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel
from athlete_sync.wearables.sync.remote_bridge import RemoteSyncBridge
from athlete_sync.wearables.token_store import ProviderCredentials, TokenStore

logger = logging.getLogger("athlete_sync.sync.session")


@dataclass
class SyncSession:
    """Everything wired for one account."""

    account_id: str
    channel: OAuthMessageChannel
    token_store: TokenStore
    store: MetricsStore
    engine: SyncEngine
    unsubscribe_remote: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)

    async def close(self) -> None:
        await self.engine.stop()
        await self.store.flush()
        if self.unsubscribe_remote is not None:
            await self.unsubscribe_remote()
            self.unsubscribe_remote = None


class SessionManager:
    """Create and hold one SyncSession per account.

    Usage::

        manager = SessionManager(settings, document_store, LocalStorage(settings.storage_path))
        session = await manager.get("acct-1")
        await session.engine.start_connect(ProviderId.BLUETOOTH)
        ...
        await manager.close_all()
    """

    def __init__(
        self,
        settings: Settings,
        document_store: DocumentStore,
        storage: LocalStorage | None = None,
        sync_config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        pairer: DevicePairer | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings:       Credentials, origin, cadence and timeouts.
            document_store: Shared store behind every session's remote bridge.
            storage:        Local persistent storage shared by all sessions.
            sync_config:    Overrides the global config (for testing).
            http_client:    Optional pre-configured httpx client (for testing).
            pairer:         Bluetooth pairing backend; defaults to a static
                            pairer when ``bluetooth_demo_device`` is set.
        """
        self._settings = settings
        self._bridge = RemoteSyncBridge(document_store)
        self._storage = storage or LocalStorage(None)
        self._config = sync_config or get_sync_config()
        self._http_client = http_client
        if pairer is None and settings.bluetooth_demo_device:
            pairer = static_pairer(settings.bluetooth_demo_device)
        self._pairer = pairer
        self._sessions: dict[str, SyncSession] = {}
        self._lock = asyncio.Lock()

    def find(self, account_id: str) -> SyncSession | None:
        """Return the existing session without creating one."""
        return self._sessions.get(account_id)

    async def get(self, account_id: str) -> SyncSession:
        """Return the account's session, creating it on first use."""
        session = self._sessions.get(account_id)
        if session is not None:
            return session
        async with self._lock:
            session = self._sessions.get(account_id)
            if session is None:
                session = await self._create(account_id)
                self._sessions[account_id] = session
        return session

    async def close_all(self) -> None:
        sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            await session.close()
        logger.info("Closed %d sync sessions", len(sessions))

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _create(self, account_id: str) -> SyncSession:
        settings, cfg = self._settings, self._config
        channel = OAuthMessageChannel(settings.app_origin)
        token_store = TokenStore(
            self._storage,
            self._credentials(),
            namespace=account_id,
            http_client=self._http_client,
        )
        store = MetricsStore(self._storage, namespace=account_id, capacity=cfg.history_capacity)
        engine = SyncEngine(
            account_id,
            self._adapters(channel, token_store),
            token_store,
            store,
            bridge=self._bridge,
            aggregator=MetricsAggregator(cfg),
            poll_interval=self._poll_interval,
            redirect_uri=lambda pid: settings.redirect_uri(pid.value),
            skip_overlapping_ticks=settings.skip_overlapping_ticks,
        )
        session = SyncSession(account_id, channel, token_store, store, engine)

        try:
            session.unsubscribe_remote = await self._bridge.subscribe(account_id, store.apply_remote)
        except NetworkError as exc:
            logger.warning("[%s] Remote subscription unavailable: %s", account_id, exc)

        logger.info("[%s] Sync session created", account_id)
        return session

    def _poll_interval(self, provider_id: ProviderId) -> float:
        if self._settings.poll_interval_seconds is not None:
            return self._settings.poll_interval_seconds
        return self._config.poll_interval(provider_id.value)

    def _credentials(self) -> dict[ProviderId, ProviderCredentials]:
        s, cfg = self._settings, self._config
        return {
            ProviderId.CLOUD_FITNESS: ProviderCredentials(
                token_url=cfg.provider(ProviderId.CLOUD_FITNESS.value).token_url,
                client_id=s.google_fit_client_id,
                client_secret=s.google_fit_client_secret,
                redirect_uri=s.redirect_uri(ProviderId.CLOUD_FITNESS.value),
            ),
            ProviderId.ACTIVITY_SERVICE: ProviderCredentials(
                token_url=cfg.provider(ProviderId.ACTIVITY_SERVICE.value).token_url,
                client_id=s.strava_client_id,
                client_secret=s.strava_client_secret,
                redirect_uri=s.redirect_uri(ProviderId.ACTIVITY_SERVICE.value),
            ),
        }

    def _adapters(
        self, channel: OAuthMessageChannel, token_store: TokenStore
    ) -> dict[ProviderId, ProviderAdapter]:
        s, cfg = self._settings, self._config
        return {
            ProviderId.CLOUD_FITNESS: CloudFitnessAdapter(
                cfg.provider(ProviderId.CLOUD_FITNESS.value),
                channel,
                token_store,
                client_id=s.google_fit_client_id,
                timeout=s.oauth_timeout_seconds,
                sync_config=cfg,
                http_client=self._http_client,
            ),
            ProviderId.BLUETOOTH: BluetoothAdapter(
                cfg.provider(ProviderId.BLUETOOTH.value),
                pairer=self._pairer,
                sync_config=cfg,
            ),
            ProviderId.ACTIVITY_SERVICE: ActivityServiceAdapter(
                cfg.provider(ProviderId.ACTIVITY_SERVICE.value),
                channel,
                client_id=s.strava_client_id,
                timeout=s.oauth_timeout_seconds,
                sync_config=cfg,
            ),
        }
