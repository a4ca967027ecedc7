"""Capability interfaces the session and orchestrator are written against."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..discovery import DeviceFilter
    from ..models.device import DeviceInfo


class Link(Protocol):
    """One live connection to one device."""

    @property
    def max_write_size(self) -> int:
        """Largest single characteristic write the link can carry."""

    async def write(self, characteristic: str, data: bytes) -> None:
        """Write to a characteristic and wait for the write to complete.

        Raises:
            BLEConnectionError: If the link is down or the write fails
        """

    async def await_notification(self, characteristic: str, timeout: float) -> bytes:
        """Wait for the next notification on a characteristic.

        Raises:
            BLETimeoutError: If nothing arrives within timeout
            BLEConnectionError: If the link drops while waiting
        """


class Adapter(Protocol):
    """The BLE adapter shared by every session."""

    async def scan(self, device_filter: DeviceFilter, duration: float) -> list[DeviceInfo]:
        """Discover devices matching the filter, in discovery order."""

    def connect(self, device: DeviceInfo, timeout: float) -> AbstractAsyncContextManager[Link]:
        """Scoped connection; released on every exit path."""
