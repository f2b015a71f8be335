"""Bluetooth heart-rate sensor adapter.

Pairing is a single request to a pairing backend filtered on the
``heart_rate`` GATT service; it resolves or fails immediately.  The sensor
stream itself is not read: samples come from the placeholder generator.
"""

from __future__ import annotations

import logging
import random
from typing import Awaitable, Callable, Optional

from athlete_sync.wearables.adapters.synthetic import generate_sample
from athlete_sync.wearables.base import (
    ConnectionHandle,
    ProviderAdapter,
    ProviderId,
    RawProviderPayload,
    TokenRecord,
)
from athlete_sync.wearables.config_loader import ProviderConfig, SyncConfig, get_sync_config
from athlete_sync.wearables.errors import DeviceNotFoundError

logger = logging.getLogger("athlete_sync.wearables.bluetooth")

#: async (service_filter) -> paired device name, or None when nothing answered
DevicePairer = Callable[[str], Awaitable[Optional[str]]]


def static_pairer(device_name: str) -> DevicePairer:
    """Pairer that always finds ``device_name`` (demo deployments)."""

    async def _pair(service_filter: str) -> str | None:
        return device_name

    return _pair


class BluetoothAdapter(ProviderAdapter):
    """Bluetooth heart-rate monitor.

    Without a pairer every connect() fails with DeviceNotFoundError.
    """

    PROVIDER_ID = ProviderId.BLUETOOTH
    DISPLAY_NAME = "Bluetooth Device"

    def __init__(
        self,
        provider_config: ProviderConfig,
        pairer: DevicePairer | None = None,
        sync_config: SyncConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._provider_config = provider_config
        self._pairer = pairer
        self._config = sync_config or get_sync_config()
        self._rng = rng
        self._device_name: str | None = None

    @property
    def device_name(self) -> str | None:
        return self._device_name

    async def connect(self) -> ConnectionHandle:
        service = self._provider_config.service_filter or "heart_rate"
        if self._pairer is None:
            raise DeviceNotFoundError(
                "No bluetooth pairing backend available", provider=self.PROVIDER_ID.value
            )

        name = await self._pairer(service)
        if not name:
            raise DeviceNotFoundError(
                "Failed to connect. Ensure your device is in pairing mode.",
                provider=self.PROVIDER_ID.value,
            )

        self._device_name = name
        logger.info("Bluetooth: paired with %s", name)
        return ConnectionHandle(provider_id=self.PROVIDER_ID, device_name=name)

    async def fetch_sample(self, token: TokenRecord | None = None) -> RawProviderPayload:
        sample = generate_sample(self._config.synthetic, rng=self._rng)
        return RawProviderPayload(provider_id=self.PROVIDER_ID, payload=sample)

    async def disconnect(self) -> None:
        self._device_name = None
