"""HTTP-level tests: health, devices, connect/disconnect, OAuth callback, plans."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from athlete_sync.config import Settings
from athlete_sync.main import create_app
from athlete_sync.wearables.base import ProviderId
from athlete_sync.wearables.storage import LocalStorage
from athlete_sync.wearables.sync.session import SessionManager

ACCOUNT = {"X-Account-Id": "acct-api-1"}


def _start_oauth_connect(client: TestClient) -> str:
    body = client.post("/api/v1/wearables/connect/activity_service", headers=ACCOUNT).json()
    (state,) = parse_qs(urlparse(body["authorization_url"]).query)["state"]
    return state


def _stored_strava_token(client: TestClient):
    session = client.app.state.sessions.find("acct-api-1")
    return session.token_store.get_token(ProviderId.ACTIVITY_SERVICE)


def _strava_token_endpoint(request: httpx.Request) -> httpx.Response:
    assert request.url.host == "www.strava.com"
    return httpx.Response(200, json={"access_token": "strava-access", "refresh_token": "strava-refresh"})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        app_origin="http://testserver",
        storage_path=str(tmp_path / "storage.json"),
        strava_client_id="strava_id",
        strava_client_secret="strava_secret",
        bluetooth_demo_device="Demo HRM",
        poll_interval_seconds=3600,
        gemini_api_key="",
    )


@pytest.fixture
def client(settings: Settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        app.state.sessions = SessionManager(
            settings,
            app.state.document_store,
            LocalStorage(settings.storage_path),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_strava_token_endpoint)),
        )
        yield test_client


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["document_store"] == "connected"


class TestWearablesApi:
    def test_account_header_required(self, client: TestClient) -> None:
        assert client.get("/api/v1/wearables/devices").status_code == 401

    def test_devices_start_disconnected(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables/devices", headers=ACCOUNT)
        assert response.status_code == 200
        devices = {d["provider_id"]: d for d in response.json()}
        assert set(devices) == {"cloud_fitness", "bluetooth", "activity_service"}
        assert not any(d["connected"] for d in devices.values())
        assert devices["cloud_fitness"]["display_name"] == "Google Fit"

    def test_empty_metrics_are_sentinel(self, client: TestClient) -> None:
        body = client.get("/api/v1/wearables/metrics", headers=ACCOUNT).json()
        assert body["state"] == "idle"
        assert body["active_provider"] is None
        assert body["current"]["heartRate"] == 0
        assert body["current"]["lastUpdated"] == 0
        assert body["history"] == []

    def test_bluetooth_connect_and_disconnect(self, client: TestClient) -> None:
        response = client.post("/api/v1/wearables/connect/bluetooth", headers=ACCOUNT)
        assert response.status_code == 202
        assert response.json()["state"] == "active"
        assert response.json()["device_name"] == "Demo HRM"

        body = client.get("/api/v1/wearables/metrics", headers=ACCOUNT).json()
        assert body["state"] == "active"
        assert body["active_provider"] == "bluetooth"

        assert client.delete("/api/v1/wearables/connect", headers=ACCOUNT).status_code == 204
        body = client.get("/api/v1/wearables/metrics", headers=ACCOUNT).json()
        assert body["state"] == "idle"
        assert body["history"] == []

    def test_unknown_provider_rejected(self, client: TestClient) -> None:
        response = client.post("/api/v1/wearables/connect/fitbit", headers=ACCOUNT)
        assert response.status_code == 422

    def test_accounts_are_isolated(self, client: TestClient) -> None:
        client.post("/api/v1/wearables/connect/bluetooth", headers=ACCOUNT)
        other = client.get("/api/v1/wearables/metrics", headers={"X-Account-Id": "acct-api-2"})
        assert other.json()["state"] == "idle"


class TestOAuthCallback:
    def test_consent_flow(self, client: TestClient) -> None:
        response = client.post("/api/v1/wearables/connect/activity_service", headers=ACCOUNT)
        assert response.status_code == 202
        body = response.json()
        assert body["state"] == "connecting"
        query = parse_qs(urlparse(body["authorization_url"]).query)
        (state,) = query["state"]
        assert state.startswith("acct-api-1.")
        assert query["redirect_uri"] == ["http://testserver/api/v1/oauth/activity_service/callback"]

        callback = client.get(
            "/api/v1/oauth/activity_service/callback",
            params={"state": state, "code": "auth-code"},
        )
        assert callback.status_code == 200
        assert "Connected" in callback.text
        assert _stored_strava_token(client).access_token == "strava-access"

    def test_denied_consent(self, client: TestClient) -> None:
        state = _start_oauth_connect(client)
        callback = client.get(
            "/api/v1/oauth/activity_service/callback",
            params={"state": state, "error": "access_denied"},
        )
        assert callback.status_code == 200
        assert "Connection failed: access_denied." in callback.text

    def test_unknown_account(self, client: TestClient) -> None:
        callback = client.get(
            "/api/v1/oauth/activity_service/callback", params={"state": "nobody.nonce", "code": "c"}
        )
        assert callback.status_code == 404

    def test_bluetooth_has_no_callback(self, client: TestClient) -> None:
        callback = client.get(
            "/api/v1/oauth/bluetooth/callback", params={"state": "acct-api-1", "code": "c"}
        )
        assert callback.status_code == 404

    def test_callback_without_pending_connect(self, client: TestClient) -> None:
        client.get("/api/v1/wearables/devices", headers=ACCOUNT)
        callback = client.get(
            "/api/v1/oauth/activity_service/callback",
            params={"state": "acct-api-1.stale-nonce", "code": "auth-code"},
        )
        assert "no pending connect" in callback.text
        assert _stored_strava_token(client) is None

    def test_callback_with_wrong_state_not_exchanged(self, client: TestClient) -> None:
        _start_oauth_connect(client)
        callback = client.get(
            "/api/v1/oauth/activity_service/callback",
            params={"state": "acct-api-1.guessed", "code": "auth-code"},
        )
        assert "no pending connect" in callback.text
        assert _stored_strava_token(client) is None

        body = client.get("/api/v1/wearables/metrics", headers=ACCOUNT).json()
        assert body["state"] == "connecting"


class TestPlansApi:
    def test_structured_plan_falls_back_without_key(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/plans/training",
            headers=ACCOUNT,
            json={"subjectContext": {"sport": "Soccer"}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["category"] == "training"
        assert body["fell_back"] is True
        assert body["document"] == {"days": []}

    def test_recovery_failure_is_bad_gateway(self, client: TestClient) -> None:
        response = client.post("/api/v1/plans/recovery", headers=ACCOUNT, json={})
        assert response.status_code == 502
        assert response.json()["detail"] == "Could not generate recovery plan; please retry"

    def test_unknown_category(self, client: TestClient) -> None:
        response = client.post("/api/v1/plans/horoscope", headers=ACCOUNT, json={})
        assert response.status_code == 422
