"""Tests for the cloud fitness adapter — fan-out requests, 401 handling, consent flow."""

from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from athlete_sync.wearables.adapters.cloud_fitness import CloudFitnessAdapter
from athlete_sync.wearables.base import ProviderId, TokenRecord
from athlete_sync.wearables.config_loader import SyncConfig
from athlete_sync.wearables.errors import (
    AuthExpiredError,
    AuthorizationDeniedError,
    MalformedResponseError,
    NetworkError,
)
from athlete_sync.wearables.storage import LocalStorage
from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel
from athlete_sync.wearables.tests.conftest import T0, TEST_ACCOUNT_ID, TEST_ORIGIN
from athlete_sync.wearables.token_store import TokenStore

API_BASE = "https://www.googleapis.com/fitness/v1/users/me"


class FakeGoogle:
    """Routes requests to the fitness API and the token endpoint."""

    def __init__(self, valid_tokens: set[str], api_status: int = 200, api_body: str | None = None) -> None:
        self.valid_tokens = valid_tokens
        self.api_status = api_status
        self.api_body = api_body
        self.api_requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.example.test":
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": "access-2"})

        self.api_requests.append(request)
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": {"code": 401}})
        if self.api_body is not None:
            return httpx.Response(self.api_status, text=self.api_body)
        if request.url.path.endswith("/sessions"):
            return httpx.Response(self.api_status, json={"session": [{"name": "Run"}]})
        data_type = json.loads(request.content)["aggregateBy"][0]["dataTypeName"]
        return httpx.Response(self.api_status, json={"bucket": [], "echo": data_type})


def _adapter(
    fake: FakeGoogle,
    sync_config: SyncConfig,
    storage: LocalStorage,
    credentials: dict,
    channel: OAuthMessageChannel,
    timeout: float = 300.0,
) -> tuple[CloudFitnessAdapter, TokenStore]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    token_store = TokenStore(storage, credentials, namespace=TEST_ACCOUNT_ID, http_client=client)
    token_store.save(ProviderId.CLOUD_FITNESS, TokenRecord(access_token="access-1", refresh_token="refresh-1"))
    adapter = CloudFitnessAdapter(
        sync_config.provider("cloud_fitness"),
        channel,
        token_store,
        client_id="test_client_id",
        timeout=timeout,
        sync_config=sync_config,
        http_client=client,
        clock=lambda: T0 / 1000,
    )
    return adapter, token_store


class TestFetchSample:
    @pytest.mark.asyncio
    async def test_fans_out_one_request_per_stream_plus_sessions(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle({"access-1"})
        adapter, token_store = _adapter(fake, sync_config, storage, credentials, channel)

        raw = await adapter.fetch_sample(token_store.get_token(ProviderId.CLOUD_FITNESS))

        aggregates = [r for r in fake.api_requests if r.method == "POST"]
        sessions = [r for r in fake.api_requests if r.method == "GET"]
        assert len(aggregates) == 3
        assert len(sessions) == 1
        assert {str(r.url) for r in aggregates} == {f"{API_BASE}/dataset:aggregate"}
        assert all(r.headers["authorization"] == "Bearer access-1" for r in fake.api_requests)

        body = json.loads(aggregates[0].content)
        assert body["bucketByTime"] == {"durationMillis": 300000}
        assert body["endTimeMillis"] == T0
        assert body["startTimeMillis"] == T0 - 24 * 3_600_000

        query = parse_qs(urlparse(str(sessions[0].url)).query)
        assert query["endTime"] == ["2026-02-23T06:00:00.000Z"]
        assert query["startTime"] == ["2026-02-22T06:00:00.000Z"]

        assert raw.provider_id is ProviderId.CLOUD_FITNESS
        assert set(raw.payload) == {
            "com.google.heart_rate.bpm",
            "com.google.step_count.delta",
            "com.google.calories.expended",
            "sessions",
            "window",
        }
        assert raw.payload["com.google.step_count.delta"]["echo"] == "com.google.step_count.delta"
        assert raw.payload["sessions"] == {"session": [{"name": "Run"}]}

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle({"access-2"})
        adapter, token_store = _adapter(fake, sync_config, storage, credentials, channel)

        raw = await adapter.fetch_sample(token_store.get_token(ProviderId.CLOUD_FITNESS))

        assert len(fake.token_requests) == 1
        assert len(fake.api_requests) == 8  # 4 rejected + 4 retried
        assert fake.api_requests[-1].headers["authorization"] == "Bearer access-2"
        assert token_store.get_token(ProviderId.CLOUD_FITNESS).access_token == "access-2"
        assert "sessions" in raw.payload

    @pytest.mark.asyncio
    async def test_second_401_is_auth_expired(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle(set())
        adapter, token_store = _adapter(fake, sync_config, storage, credentials, channel)

        with pytest.raises(AuthExpiredError):
            await adapter.fetch_sample(token_store.get_token(ProviderId.CLOUD_FITNESS))
        assert len(fake.token_requests) == 1
        assert len(fake.api_requests) == 8

    @pytest.mark.asyncio
    async def test_missing_token_is_auth_expired(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle({"access-1"})
        adapter, _ = _adapter(fake, sync_config, storage, credentials, channel)
        with pytest.raises(AuthExpiredError):
            await adapter.fetch_sample(None)
        assert fake.api_requests == []

    @pytest.mark.asyncio
    async def test_server_error_is_network_error(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle({"access-1"}, api_status=503)
        adapter, token_store = _adapter(fake, sync_config, storage, credentials, channel)
        with pytest.raises(NetworkError):
            await adapter.fetch_sample(token_store.get_token(ProviderId.CLOUD_FITNESS))
        assert fake.token_requests == []

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(
        self, sync_config, storage, credentials, channel
    ) -> None:
        fake = FakeGoogle({"access-1"}, api_body="<html>maintenance</html>")
        adapter, token_store = _adapter(fake, sync_config, storage, credentials, channel)
        with pytest.raises(MalformedResponseError):
            await adapter.fetch_sample(token_store.get_token(ProviderId.CLOUD_FITNESS))


class TestConsentFlow:
    def test_authorization_url(self, sync_config, storage, credentials, channel) -> None:
        adapter, _ = _adapter(FakeGoogle(set()), sync_config, storage, credentials, channel)
        url = adapter.authorization_url(f"{TEST_ORIGIN}/cb", state=TEST_ACCOUNT_ID)

        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://accounts.google.com/o/oauth2/v2/auth"
        )
        assert query["client_id"] == "test_client_id"
        assert query["redirect_uri"] == f"{TEST_ORIGIN}/cb"
        assert query["response_type"] == "code"
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"
        assert query["state"] == TEST_ACCOUNT_ID
        assert "https://www.googleapis.com/auth/fitness.activity.read" in query["scope"].split(" ")

    @pytest.mark.asyncio
    async def test_connect_resolves_on_callback_message(
        self, sync_config, storage, credentials, channel
    ) -> None:
        adapter, _ = _adapter(FakeGoogle(set()), sync_config, storage, credentials, channel)
        task = asyncio.create_task(adapter.connect())
        await asyncio.sleep(0)

        accepted = channel.post(
            {"type": "oauth_callback", "provider": "cloud_fitness", "success": True, "token": "tok"},
            origin=TEST_ORIGIN,
        )
        handle = await task

        assert accepted is True
        assert handle.provider_id is ProviderId.CLOUD_FITNESS
        assert handle.token == "tok"

    @pytest.mark.asyncio
    async def test_connect_denied(self, sync_config, storage, credentials, channel) -> None:
        adapter, _ = _adapter(FakeGoogle(set()), sync_config, storage, credentials, channel)
        task = asyncio.create_task(adapter.connect())
        await asyncio.sleep(0)
        channel.post(
            {"type": "oauth_callback", "provider": "cloud_fitness", "success": False, "error": "access_denied"},
            origin=TEST_ORIGIN,
        )
        with pytest.raises(AuthorizationDeniedError, match="access_denied"):
            await task

    @pytest.mark.asyncio
    async def test_connect_times_out_as_abandoned(
        self, sync_config, storage, credentials, channel
    ) -> None:
        adapter, _ = _adapter(
            FakeGoogle(set()), sync_config, storage, credentials, channel, timeout=0.01
        )
        with pytest.raises(AuthorizationDeniedError, match="abandoned"):
            await adapter.connect()
