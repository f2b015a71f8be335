"""Pydantic models for wearable sync: metrics, devices, connect flow, OAuth messages."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from athlete_sync.models.base import SyncBase
from athlete_sync.wearables.base import (
    CanonicalMetricsRecord,
    DeviceConnection,
    ProviderId,
)


# ---------- Metrics ----------

class MetricsRecordRead(SyncBase):
    timestamp: int
    heart_rate: int = Field(alias="heartRate", ge=0, le=300)
    steps: int = Field(ge=0)
    calories: float = Field(ge=0)
    sleep_hours: float = Field(alias="sleepHours", ge=0, le=24)
    hydration_percent: float = Field(alias="hydrationPercent", ge=0, le=100)
    stress_percent: float = Field(alias="stressPercent", ge=0, le=100)
    distance_km: float | None = Field(default=None, alias="distanceKm", ge=0)
    active_minutes: float | None = Field(default=None, alias="activeMinutes", ge=0)
    activities: list[str] | None = None
    last_updated: int = Field(alias="lastUpdated")

    @classmethod
    def from_record(cls, record: CanonicalMetricsRecord) -> MetricsRecordRead:
        return cls.model_validate(record.to_document())


class MetricsSnapshotRead(SyncBase):
    active_provider: ProviderId | None = None
    state: str
    current: MetricsRecordRead
    history: list[MetricsRecordRead] = Field(default_factory=list)


# ---------- Devices ----------

class DeviceConnectionRead(SyncBase):
    provider_id: ProviderId
    display_name: str
    connected: bool
    last_sync_at: datetime | None = None

    @classmethod
    def from_connection(
        cls, connection: DeviceConnection, display_name: str
    ) -> DeviceConnectionRead:
        return cls(
            provider_id=connection.provider_id,
            display_name=display_name,
            connected=connection.connected,
            last_sync_at=connection.last_sync_at,
        )


class ConnectResponse(SyncBase):
    provider_id: ProviderId
    state: str
    authorization_url: str | None = None
    device_name: str | None = None


# ---------- Cross-context OAuth message ----------

class OAuthCallbackMessage(SyncBase):
    """Message posted by the OAuth redirect target to the waiting session.

    Exactly one of ``token`` / ``code`` accompanies a success; ``error``
    accompanies a failure.
    """

    type: Literal["oauth_callback"]
    provider: ProviderId
    success: bool
    token: str | None = None
    code: str | None = None
    error: str | None = None
