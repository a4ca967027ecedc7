"""Bleak-backed implementation of the adapter capability."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..discovery import discover_devices
from .connection import BLEConnection

if TYPE_CHECKING:
    from ..discovery import DeviceFilter
    from ..models.device import DeviceInfo


class BleakAdapter:
    """The host's default Bluetooth adapter, driven through bleak."""

    def __init__(self, max_attempts: int = 2, use_services_cache: bool = True):
        self.max_attempts = max_attempts
        self.use_services_cache = use_services_cache

    async def scan(self, device_filter: DeviceFilter, duration: float) -> list[DeviceInfo]:
        return await discover_devices(device_filter, timeout=duration)

    def connect(self, device: DeviceInfo, timeout: float) -> BLEConnection:
        return BLEConnection(
            device,
            timeout=timeout,
            max_attempts=self.max_attempts,
            use_services_cache=self.use_services_cache,
        )
