"""Discovered device model."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceInfo:
    """A device found during discovery.

    Attributes:
        address: Link-layer address (MAC, or platform UUID on macOS)
        name: Advertised local name
        rssi: Signal strength at discovery time
        firmware: Firmware version marker from manufacturer data, if advertised
        ble_device: Backend handle from bleak, reused for connecting
    """

    address: str
    name: str | None = None
    rssi: int | None = None
    firmware: str | None = None
    ble_device: object | None = None

    @property
    def label(self) -> str:
        """Short printable identifier."""
        if self.name:
            return f"{self.name} ({self.address})"
        return self.address
