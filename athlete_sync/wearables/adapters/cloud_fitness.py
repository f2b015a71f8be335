"""Google Fit REST adapter (the cloud-fitness provider).

OAuth2 authorization code flow.  Each sample is a parallel fan-out: one
``dataset:aggregate`` request per metric stream plus one ``sessions``
request, all over the trailing window and bucketed server-side.

Environment variables (via Settings):
    GOOGLE_FIT_CLIENT_ID      — OAuth2 client ID
    GOOGLE_FIT_CLIENT_SECRET  — OAuth2 client secret

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    POST /dataset:aggregate  — bucketed heart rate, steps, calories
    GET  /sessions           — named activity sessions
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

import httpx

from athlete_sync.wearables.base import (
    OAuthProviderAdapter,
    ProviderId,
    RawProviderPayload,
    TokenRecord,
)
from athlete_sync.wearables.config_loader import ProviderConfig, SyncConfig, get_sync_config
from athlete_sync.wearables.errors import (
    AuthExpiredError,
    MalformedResponseError,
    NetworkError,
    UnauthorizedResponse,
)
from athlete_sync.wearables.reauth import with_single_reauth
from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel
from athlete_sync.wearables.token_store import TokenStore

logger = logging.getLogger("athlete_sync.wearables.cloud_fitness")

SESSIONS_KEY = "sessions"
WINDOW_KEY = "window"


def _iso_millis(epoch_millis: int) -> str:
    """Format epoch millis as ``2026-02-23T06:45:00.000Z``."""
    dt = datetime.fromtimestamp(epoch_millis / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{epoch_millis % 1000:03d}Z"


class CloudFitnessAdapter(OAuthProviderAdapter):
    """Google Fit adapter.

    The access token is only ever found to be stale reactively: a 401 on
    any stream triggers one refresh through the TokenStore and one retry of
    the whole fan-out.
    """

    PROVIDER_ID = ProviderId.CLOUD_FITNESS
    DISPLAY_NAME = "Google Fit"
    REQUIRES_TOKEN = True

    def __init__(
        self,
        provider_config: ProviderConfig,
        channel: OAuthMessageChannel,
        token_store: TokenStore,
        client_id: str = "",
        timeout: float = 300.0,
        sync_config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the Google Fit adapter.

        Args:
            provider_config: Endpoints and scopes from sync_config.yaml.
            channel:         Where the OAuth callback message arrives.
            token_store:     Used for the refresh on 401.
            client_id:       OAuth2 client ID.
            timeout:         Seconds to wait for the consent callback.
            sync_config:     Overrides the global config (for testing).
            http_client:     Optional pre-configured httpx client (for testing).
            clock:           Epoch-seconds clock (for testing).
        """
        super().__init__(provider_config, channel, client_id=client_id, timeout=timeout)
        self._token_store = token_store
        self._config = sync_config or get_sync_config()
        self._http_client = http_client
        self._clock = clock

    async def fetch_sample(self, token: TokenRecord | None = None) -> RawProviderPayload:
        if token is None:
            raise AuthExpiredError("No access token stored", provider=self.PROVIDER_ID.value)

        fetch = with_single_reauth(
            self._fetch_once, lambda: self._token_store.refresh(self.PROVIDER_ID)
        )
        payload = await fetch(token)
        return RawProviderPayload(provider_id=self.PROVIDER_ID, payload=payload)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def data_types(self) -> list[str]:
        """Metric streams queried per sample, from the normalization table."""
        return list(self._config.normalization_for(self.PROVIDER_ID.value))

    async def _fetch_once(self, token: TokenRecord) -> dict:
        end_ms = int(self._clock() * 1000)
        start_ms = end_ms - self._config.window_hours * 3_600_000
        data_types = self.data_types()

        async with self._client() as client:
            results = await asyncio.gather(
                *(self._aggregate(client, token, dt, start_ms, end_ms) for dt in data_types),
                self._sessions(client, token, start_ms, end_ms),
                return_exceptions=True,
            )

        # A 401 on any stream wins so the reauth wrapper sees it.
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if isinstance(failure, UnauthorizedResponse):
                raise failure
        if failures:
            raise failures[0]

        payload: dict = dict(zip(data_types, results[: len(data_types)]))
        payload[SESSIONS_KEY] = results[-1]
        payload[WINDOW_KEY] = {"startTimeMillis": start_ms, "endTimeMillis": end_ms}
        return payload

    async def _aggregate(
        self,
        client: httpx.AsyncClient,
        token: TokenRecord,
        data_type: str,
        start_ms: int,
        end_ms: int,
    ) -> dict:
        body = {
            "aggregateBy": [{"dataTypeName": data_type}],
            "bucketByTime": {"durationMillis": self._config.bucket_millis},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        return await self._request(
            client,
            "POST",
            f"{self._provider_config.api_base}/dataset:aggregate",
            token,
            data_type,
            json=body,
        )

    async def _sessions(
        self, client: httpx.AsyncClient, token: TokenRecord, start_ms: int, end_ms: int
    ) -> dict:
        return await self._request(
            client,
            "GET",
            f"{self._provider_config.api_base}/sessions",
            token,
            SESSIONS_KEY,
            params={"startTime": _iso_millis(start_ms), "endTime": _iso_millis(end_ms)},
        )

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client:
            yield self._http_client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        token: TokenRecord,
        what: str,
        **kwargs,
    ) -> dict:
        """Make an authenticated request and decode the JSON body.

        Raises:
            UnauthorizedResponse:   On 401.
            NetworkError:           On transport failure or any other non-2xx.
            MalformedResponseError: If the body is not a JSON object.
        """
        headers = {"Authorization": f"{token.token_type} {token.access_token}"}
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(f"{what}: {exc}", provider=self.PROVIDER_ID.value) from exc

        if response.status_code == 401:
            raise UnauthorizedResponse(f"{what}: 401", provider=self.PROVIDER_ID.value)
        if not response.is_success:
            raise NetworkError(
                f"{what}: HTTP {response.status_code}", provider=self.PROVIDER_ID.value
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"{what}: body is not JSON", provider=self.PROVIDER_ID.value
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"{what}: expected a JSON object", provider=self.PROVIDER_ID.value
            )
        return data
