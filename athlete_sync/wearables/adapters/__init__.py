"""Provider adapters.

Each adapter implements the ProviderAdapter ABC and handles:
- Connecting (OAuth consent callback or bluetooth pairing)
- Fetching the most recent window of raw data

Available adapters:
    CloudFitnessAdapter    — Google Fit REST API (OAuth2), real data
    BluetoothAdapter       — Bluetooth heart-rate monitor, synthetic samples
    ActivityServiceAdapter — Strava (OAuth2), synthetic samples
"""

from athlete_sync.wearables.adapters.activity_service import ActivityServiceAdapter
from athlete_sync.wearables.adapters.bluetooth import BluetoothAdapter
from athlete_sync.wearables.adapters.cloud_fitness import CloudFitnessAdapter

__all__ = [
    "CloudFitnessAdapter",
    "BluetoothAdapter",
    "ActivityServiceAdapter",
]
