"""Base classes and canonical data models for wearable sync.

Every provider adapter must subclass ProviderAdapter and hand back a
RawProviderPayload; the aggregator turns that into CanonicalMetricsRecord
values.  These types are the single source of truth consumed by the sync
engine, the metrics store, the remote bridge, and the API layer.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from athlete_sync.wearables.errors import AuthorizationDeniedError, MalformedResponseError

if TYPE_CHECKING:
    from athlete_sync.wearables.config_loader import ProviderConfig
    from athlete_sync.wearables.sync.oauth_channel import OAuthMessageChannel

logger = logging.getLogger("athlete_sync.wearables")


def now_millis() -> int:
    """Wall-clock epoch milliseconds."""
    return int(time.time() * 1000)


class ProviderId(str, Enum):
    """Closed set of supported data sources."""

    CLOUD_FITNESS = "cloud_fitness"
    BLUETOOTH = "bluetooth"
    ACTIVITY_SERVICE = "activity_service"


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class TokenRecord:
    """OAuth token pair for one provider.

    There is no expiry field: expiry is only ever discovered through a 401.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
        extra:         Any additional fields returned by the provider (e.g. athlete id).
    """

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> TokenRecord:
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            scope=list(data.get("scope") or []),
            extra=dict(data.get("extra") or {}),
        )


# ---------------------------------------------------------------------------
# Raw provider payload
# ---------------------------------------------------------------------------


@dataclass
class RawProviderPayload:
    """Raw, un-normalized payload from one provider fetch.

    Attributes:
        provider_id: Provider that produced the payload.
        payload:     Provider-shaped JSON-serializable data.
        fetched_at:  UTC timestamp of the fetch.
    """

    provider_id: ProviderId
    payload: dict
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def fetched_at_millis(self) -> int:
        return int(self.fetched_at.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------

# field → (low, high); None means unbounded above
FIELD_BOUNDS: dict[str, tuple[float, float | None]] = {
    "heart_rate": (0, 300),
    "steps": (0, None),
    "calories": (0, None),
    "sleep_hours": (0, 24),
    "hydration_percent": (0, 100),
    "stress_percent": (0, 100),
    "distance_km": (0, None),
    "active_minutes": (0, None),
}

# canonical attribute → document key in the remote store
_DOCUMENT_KEYS: dict[str, str] = {
    "timestamp": "timestamp",
    "heart_rate": "heartRate",
    "steps": "steps",
    "calories": "calories",
    "sleep_hours": "sleepHours",
    "hydration_percent": "hydrationPercent",
    "stress_percent": "stressPercent",
    "distance_km": "distanceKm",
    "active_minutes": "activeMinutes",
    "activities": "activities",
    "last_updated": "lastUpdated",
}


@dataclass(frozen=True)
class CanonicalMetricsRecord:
    """Provider-independent health sample for one instant.

    An all-zero record is the "no data yet" sentinel; it is only
    distinguishable from a genuine zero reading by ``last_updated``.

    Attributes:
        timestamp:         Epoch milliseconds the sample represents.
        heart_rate:        BPM in [0, 300], 0 = unknown.
        steps:             Step count within the sampling window.
        calories:          kcal within the sampling window.
        sleep_hours:       Hours slept, [0, 24].
        hydration_percent: [0, 100].
        stress_percent:    [0, 100].
        distance_km:       Optional distance.
        active_minutes:    Optional active minutes.
        activities:        Optional ordered activity names.
        last_updated:      Epoch milliseconds this record was last mutated.
    """

    timestamp: int = 0
    heart_rate: int = 0
    steps: int = 0
    calories: float = 0
    sleep_hours: float = 0
    hydration_percent: float = 0
    stress_percent: float = 0
    distance_km: float | None = None
    active_minutes: float | None = None
    activities: tuple[str, ...] | None = None
    last_updated: int = 0

    @classmethod
    def empty(cls) -> CanonicalMetricsRecord:
        """The "no data yet" sentinel."""
        return cls()

    @property
    def is_sentinel(self) -> bool:
        return self == CanonicalMetricsRecord()

    def sort_key(self) -> tuple[int, int]:
        return (self.timestamp, self.last_updated)

    def is_newer_than(self, other: CanonicalMetricsRecord) -> bool:
        """Prefer the later timestamp; ``last_updated`` breaks ties."""
        return self.sort_key() > other.sort_key()

    def clamped(self) -> CanonicalMetricsRecord:
        """Return a copy with every numeric field forced into its bounds."""
        changes: dict[str, Any] = {}
        for name, (low, high) in FIELD_BOUNDS.items():
            value = getattr(self, name)
            if value is None:
                continue
            bounded = max(low, value)
            if high is not None:
                bounded = min(high, bounded)
            if bounded != value:
                changes[name] = type(value)(bounded)
        return replace(self, **changes) if changes else self

    def stamped(self, at: int | None = None) -> CanonicalMetricsRecord:
        return replace(self, last_updated=at if at is not None else now_millis())

    # ------------------------------------------------------------------
    # Document (remote store / local mirror) encoding
    # ------------------------------------------------------------------

    def to_document(self) -> dict:
        doc: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            doc[key] = list(value) if attr == "activities" else value
        return doc

    @classmethod
    def from_document(cls, doc: Any) -> CanonicalMetricsRecord:
        """Decode a stored document.

        Raises:
            MalformedResponseError: If the document is not a mapping or a
                field has the wrong type.
        """
        if not isinstance(doc, dict):
            raise MalformedResponseError(f"Metrics document must be a mapping, got {type(doc).__name__}")

        kwargs: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            if key not in doc or doc[key] is None:
                continue
            value = doc[key]
            try:
                if attr == "activities":
                    kwargs[attr] = tuple(str(a) for a in value)
                elif attr in ("timestamp", "last_updated"):
                    kwargs[attr] = _coerce_epoch_millis(value)
                elif attr in ("heart_rate", "steps"):
                    kwargs[attr] = int(value)
                else:
                    kwargs[attr] = float(value)
            except (TypeError, ValueError) as exc:
                raise MalformedResponseError(f"Bad value for {key!r}: {value!r}") from exc
        return cls(**kwargs).clamped()


def _coerce_epoch_millis(value: Any) -> int:
    """Accept epoch millis (int/str digits) or an ISO-8601 string."""
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value)
    if text.isdigit():
        return int(text)
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@dataclass
class DeviceConnection:
    """Connection status for one provider."""

    provider_id: ProviderId
    connected: bool = False
    last_sync_at: datetime | None = None


@dataclass
class ConnectionHandle:
    """What a successful connect() hands back.

    Attributes:
        provider_id: The connected provider.
        device_name: Paired peripheral name (bluetooth only).
        token:       Token delivered by the OAuth callback, if any.
    """

    provider_id: ProviderId
    device_name: str | None = None
    token: str | None = None


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    Subclasses must implement:
        - connect()
        - fetch_sample()

    Optional overrides:
        - authorization_url()  (OAuth providers)
        - disconnect()
    """

    #: Provider this adapter serves.
    PROVIDER_ID: ProviderId

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    #: Whether fetch_sample() needs a stored access token.
    REQUIRES_TOKEN: bool = False

    def authorization_url(self, redirect_uri: str, state: str) -> str | None:
        """Consent-screen URL for OAuth providers; None for the rest."""
        return None

    @abstractmethod
    async def connect(self) -> ConnectionHandle:
        """Establish the connection.

        Raises:
            AuthorizationDeniedError: The user declined or abandoned consent.
            DeviceNotFoundError:      No compatible peripheral responded.
        """

    @abstractmethod
    async def fetch_sample(self, token: TokenRecord | None = None) -> RawProviderPayload:
        """Retrieve the most recent window of data.

        Raises:
            AuthExpiredError:       Access was rejected after one refresh.
            NetworkError:           Transient transport or HTTP failure.
            MalformedResponseError: The provider answered with an unexpected body.
        """

    async def disconnect(self) -> None:
        """Drop any provider-held handle.  Idempotent; never revokes tokens."""
        return None


class OAuthProviderAdapter(ProviderAdapter):
    """Adapter whose connect() completes through an external consent flow.

    connect() suspends until the redirect callback posts an
    ``oauth_callback`` message for this provider onto the channel, or until
    ``timeout`` seconds pass.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        channel: OAuthMessageChannel,
        client_id: str = "",
        timeout: float = 300.0,
    ) -> None:
        self._provider_config = provider_config
        self._channel = channel
        self._client_id = client_id
        self._timeout = timeout

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        cfg = self._provider_config
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": cfg.scope,
            "state": state,
            **cfg.extra_auth_params,
        }
        return f"{cfg.auth_url}?{urlencode(params)}"

    async def connect(self) -> ConnectionHandle:
        logger.info("%s: waiting for authorization callback", self.DISPLAY_NAME)
        message = await self._channel.wait_for(self.PROVIDER_ID, timeout=self._timeout)
        if not message.success:
            raise AuthorizationDeniedError(
                f"Authorization failed: {message.error or 'denied'}",
                provider=self.PROVIDER_ID.value,
            )
        return ConnectionHandle(provider_id=self.PROVIDER_ID, token=message.token)

    async def disconnect(self) -> None:
        self._channel.cancel(self.PROVIDER_ID)
