"""BLE transport layer."""

from .adapter import BleakAdapter
from .base import Adapter, Link
from .connection import BLEConnection

__all__ = [
    "Adapter",
    "BLEConnection",
    "BleakAdapter",
    "Link",
]
