"""Wearable sync: canonical metrics model, provider adapters, aggregation.

Public API::

    from athlete_sync.wearables import CanonicalMetricsRecord, ProviderId
    from athlete_sync.wearables.adapters import CloudFitnessAdapter
    from athlete_sync.wearables.aggregator import MetricsAggregator
"""

from athlete_sync.wearables.base import (
    CanonicalMetricsRecord,
    ConnectionHandle,
    DeviceConnection,
    ProviderAdapter,
    ProviderId,
    RawProviderPayload,
    TokenRecord,
)
from athlete_sync.wearables.config_loader import get_sync_config, reload_sync_config
from athlete_sync.wearables.errors import WearableSyncError

__all__ = [
    "CanonicalMetricsRecord",
    "ConnectionHandle",
    "DeviceConnection",
    "ProviderAdapter",
    "ProviderId",
    "RawProviderPayload",
    "TokenRecord",
    "WearableSyncError",
    "get_sync_config",
    "reload_sync_config",
]
