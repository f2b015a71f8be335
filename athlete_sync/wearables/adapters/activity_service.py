"""Strava adapter (the activity-service provider).

OAuth2 authorization code flow; the callback's code is exchanged by the
TokenStore like any other provider.  Activity streams are not read yet, so
samples come from the placeholder generator and no token is needed.

Environment variables (via Settings):
    STRAVA_CLIENT_ID      — OAuth2 client ID
    STRAVA_CLIENT_SECRET  — OAuth2 client secret
"""

from __future__ import annotations

import logging
import random

from athlete_sync.wearables.adapters.synthetic import generate_sample
from athlete_sync.wearables.base import (
    OAuthProviderAdapter,
    ProviderId,
    RawProviderPayload,
    TokenRecord,
)
from athlete_sync.wearables.config_loader import ProviderConfig, SyncConfig, get_sync_config
from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel

logger = logging.getLogger("athlete_sync.wearables.activity_service")


class ActivityServiceAdapter(OAuthProviderAdapter):
    """Strava adapter with synthetic samples."""

    PROVIDER_ID = ProviderId.ACTIVITY_SERVICE
    DISPLAY_NAME = "Strava"

    def __init__(
        self,
        provider_config: ProviderConfig,
        channel: OAuthMessageChannel,
        client_id: str = "",
        timeout: float = 300.0,
        sync_config: SyncConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(provider_config, channel, client_id=client_id, timeout=timeout)
        self._config = sync_config or get_sync_config()
        self._rng = rng

    async def fetch_sample(self, token: TokenRecord | None = None) -> RawProviderPayload:
        sample = generate_sample(self._config.synthetic, rng=self._rng)
        return RawProviderPayload(provider_id=self.PROVIDER_ID, payload=sample)
