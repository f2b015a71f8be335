"""Shared fixtures and canned provider responses for wearable sync tests."""

from __future__ import annotations

import json
import random
from pathlib import Path

import pytest

from athlete_sync.wearables.base import CanonicalMetricsRecord, ProviderId, TokenRecord
from athlete_sync.wearables.config_loader import SyncConfig, load_sync_config
from athlete_sync.wearables.storage import LocalStorage
from athlete_sync.wearables.sync.metrics_store import MetricsStore
from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel
from athlete_sync.wearables.token_store import ProviderCredentials, TokenStore

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

TEST_ACCOUNT_ID = "acct-test-1"
TEST_ORIGIN = "http://testserver"
TOKEN_URL = "https://oauth2.example.test/token"

# 2026-02-23T06:00:00Z
T0 = 1_771_826_400_000


def make_record(timestamp: int, heart_rate: int = 72, **fields) -> CanonicalMetricsRecord:
    """A canonical record with the example-scenario defaults."""
    values = {"steps": 500, "calories": 200}
    values.update(fields)
    return CanonicalMetricsRecord(timestamp=timestamp, heart_rate=heart_rate, **values)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def cloud_fitness_raw() -> dict:
    return json.loads((FIXTURES_DIR / "cloud_fitness_aggregate.json").read_text())


# ---------------------------------------------------------------------------
# Storage, tokens, channel
# ---------------------------------------------------------------------------


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage.json")


@pytest.fixture
def credentials() -> dict[ProviderId, ProviderCredentials]:
    return {
        ProviderId.CLOUD_FITNESS: ProviderCredentials(
            token_url=TOKEN_URL,
            client_id="test_client_id",
            client_secret="test_client_secret",
            redirect_uri=f"{TEST_ORIGIN}/api/v1/oauth/cloud_fitness/callback",
        ),
        ProviderId.ACTIVITY_SERVICE: ProviderCredentials(
            token_url="https://activity.example.test/oauth/token",
            client_id="strava_id",
            client_secret="strava_secret",
            redirect_uri=f"{TEST_ORIGIN}/api/v1/oauth/activity_service/callback",
        ),
    }


@pytest.fixture
def token_store(storage: LocalStorage, credentials: dict) -> TokenStore:
    return TokenStore(storage, credentials, namespace=TEST_ACCOUNT_ID)


@pytest.fixture
def stored_token(token_store: TokenStore) -> TokenRecord:
    token = TokenRecord(access_token="access-1", refresh_token="refresh-1")
    token_store.save(ProviderId.CLOUD_FITNESS, token)
    return token


@pytest.fixture
def channel() -> OAuthMessageChannel:
    return OAuthMessageChannel(expected_origin=TEST_ORIGIN)


@pytest.fixture
def metrics_store() -> MetricsStore:
    return MetricsStore(None, namespace=TEST_ACCOUNT_ID, clock=lambda: T0 + 999)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)
