"""Device discovery and selection."""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from bleak import BleakScanner
from bleak.exc import BleakError

from .exceptions import AdapterUnavailableError
from .models.device import DeviceInfo
from .protocol import MANUFACTURER_ID, SERVICE_UUID

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceFilter:
    """Selects which discovered devices become transfer targets.

    Attributes:
        name_pattern: Shell-style glob on the advertised name (None = any)
        service_uuid: Advertised service that must be present (None = any)
        addresses: Explicit address allow-list (empty = any)
    """

    name_pattern: str | None = None
    service_uuid: str | None = SERVICE_UUID
    addresses: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "addresses", frozenset(address.upper() for address in self.addresses)
        )

    def matches(
            self,
            address: str,
            name: str | None,
            service_uuids: Iterable[str] = (),
    ) -> bool:
        """Check one advertisement against the filter."""
        if self.addresses and address.upper() not in self.addresses:
            return False
        if self.name_pattern is not None:
            if name is None or not fnmatch.fnmatchcase(name, self.name_pattern):
                return False
        if self.service_uuid is not None:
            wanted = self.service_uuid.lower()
            if wanted not in (uuid.lower() for uuid in service_uuids):
                return False
        return True


def parse_firmware_marker(manufacturer_data: dict[int, bytes]) -> str | None:
    """Extract "major.minor" from the firmware's manufacturer data, if present."""
    payload = manufacturer_data.get(MANUFACTURER_ID)
    if payload is None or len(payload) < 2:
        return None
    return f"{payload[0]}.{payload[1]}"


def dedupe_devices(devices: Iterable[DeviceInfo]) -> list[DeviceInfo]:
    """Drop repeated addresses, keeping the first sighting and discovery order."""
    seen: set[str] = set()
    unique: list[DeviceInfo] = []
    for device in devices:
        key = device.address.upper()
        if key in seen:
            _LOGGER.debug("Ignoring duplicate sighting of %s", device.address)
            continue
        seen.add(key)
        unique.append(device)
    return unique


async def discover_devices(
        device_filter: DeviceFilter | None = None,
        timeout: float = 5.0,
) -> list[DeviceInfo]:
    """Scan for rudelblinken devices.

    Args:
        device_filter: Selection filter (default: any device advertising the service)
        timeout: Scan duration in seconds (default: 5)

    Returns:
        Matching devices in discovery order, one per address

    Raises:
        AdapterUnavailableError: If the Bluetooth adapter cannot scan
    """
    device_filter = device_filter or DeviceFilter()
    _LOGGER.debug("Scanning for %.1fs", timeout)

    try:
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except (BleakError, OSError) as e:
        raise AdapterUnavailableError(f"Scan failed: {e}") from e

    devices = []
    for address, (ble_device, adv) in found.items():
        name = adv.local_name or ble_device.name
        if not device_filter.matches(address, name, adv.service_uuids):
            continue
        devices.append(DeviceInfo(
            address=address,
            name=name,
            rssi=adv.rssi,
            firmware=parse_firmware_marker(adv.manufacturer_data),
            ble_device=ble_device,
        ))

    _LOGGER.info("Discovered %d matching device(s) out of %d", len(devices), len(found))
    return dedupe_devices(devices)
