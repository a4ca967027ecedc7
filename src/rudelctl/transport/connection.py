"""BLE connection management."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from ..exceptions import AdapterUnavailableError, BLEConnectionError, BLETimeoutError
from ..protocol import ATT_HEADER_SIZE, CONTROL_CHAR_UUID, DATA_CHAR_UUID, SERVICE_UUID

if TYPE_CHECKING:
    from bleak.backends.characteristic import BleakGATTCharacteristic

    from ..models.device import DeviceInfo

_LOGGER = logging.getLogger(__name__)


class BLEConnection:
    """Manages the BLE connection to one rudelblinken device.

    Features:
    - Automatic retry logic with bleak-retry-connector
    - Service caching for faster reconnections
    - Context manager for automatic cleanup
    - One notification queue per characteristic
    - Waiters are woken with BLEConnectionError when the link drops
    """

    def __init__(
            self,
            device: DeviceInfo,
            timeout: float = 10.0,
            max_attempts: int = 2,
            use_services_cache: bool = True,
            notify_characteristics: tuple[str, ...] = (CONTROL_CHAR_UUID,),
    ):
        """Initialize BLE connection manager.

        Args:
            device: Device to connect to
            timeout: Connection timeout in seconds (default: 10)
            max_attempts: Maximum connection attempts for bleak-retry-connector (default: 2)
            use_services_cache: Enable GATT service caching for faster reconnections (default: True)
            notify_characteristics: Characteristics to subscribe to after connecting
        """
        self.device = device
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.use_services_cache = use_services_cache
        self.notify_characteristics = tuple(uuid.lower() for uuid in notify_characteristics)

        self._client: BleakClient | None = None
        self._characteristics: dict[str, BleakGATTCharacteristic] = {}
        # None is queued as a sentinel when the link drops
        self._queues: dict[str, asyncio.Queue[bytes | None]] = {
            uuid: asyncio.Queue() for uuid in self.notify_characteristics
        }
        self._dropped = False

    async def __aenter__(self) -> BLEConnection:
        """Connect to device (context manager entry)."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Disconnect from device (context manager exit)."""
        await self.disconnect()

    async def connect(self) -> None:
        """Establish BLE connection to device.

        Raises:
            AdapterUnavailableError: If no Bluetooth adapter is usable
            BLEConnectionError: If connection fails
            BLETimeoutError: If connection times out
        """
        if self._client and self._client.is_connected:
            return  # Already connected

        address = self.device.address
        try:
            _LOGGER.debug(
                "Connecting to %s with bleak-retry-connector (max_attempts=%d)",
                address,
                self.max_attempts,
            )

            # Reuse the scanner's handle if discovery produced one
            ble_device = self.device.ble_device
            if ble_device is None:
                try:
                    ble_device = await BleakScanner.find_device_by_address(
                        address,
                        timeout=self.timeout,
                    )
                except BleakError as e:
                    raise AdapterUnavailableError(f"Cannot scan for {address}: {e}") from e
                if ble_device is None:
                    raise BLEConnectionError(f"Device {address} not found during scan")

            self._dropped = False
            self._client = await establish_connection(
                client_class=BleakClientWithServiceCache,
                device=ble_device,
                name=self.device.name or address,
                disconnected_callback=self._on_disconnect,
                max_attempts=self.max_attempts,
                use_services_cache=self.use_services_cache,
                timeout=self.timeout,
            )

            _LOGGER.debug("Connected to %s (mtu=%d)", address, self._client.mtu_size)

            await self._setup_characteristics()

        except BLEConnectionError:
            await self.disconnect()
            raise
        except asyncio.TimeoutError as e:
            await self.disconnect()
            raise BLETimeoutError(f"Connection timeout after {self.timeout}s") from e
        except Exception as e:
            await self.disconnect()
            raise BLEConnectionError(f"Failed to connect: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from device."""
        if self._client and self._client.is_connected:
            try:
                _LOGGER.debug("Disconnecting from %s", self.device.address)
                await self._client.disconnect()
            except Exception as e:
                _LOGGER.warning("Error during disconnect from %s: %s", self.device.address, e)
        self._client = None

    async def _setup_characteristics(self) -> None:
        """Resolve transfer characteristics and start notifications.

        Raises:
            BLEConnectionError: If service/characteristic not found
        """
        if not self._client or not self._client.is_connected:
            raise BLEConnectionError("Not connected")

        service = self._client.services.get_service(SERVICE_UUID)
        if not service:
            raise BLEConnectionError(f"Service {SERVICE_UUID} not found")

        for uuid in (CONTROL_CHAR_UUID, DATA_CHAR_UUID):
            characteristic = service.get_characteristic(uuid)
            if characteristic is None:
                raise BLEConnectionError(f"Characteristic {uuid} not found")
            self._characteristics[uuid.lower()] = characteristic

        for uuid in self.notify_characteristics:
            await self._client.start_notify(
                self._characteristics[uuid],
                self._make_notification_callback(uuid),
            )

        _LOGGER.debug("Notifications started on %s", ", ".join(self.notify_characteristics))

    def _make_notification_callback(self, uuid: str):
        queue = self._queues[uuid]

        def callback(sender, data: bytearray) -> None:
            queue.put_nowait(bytes(data))

        return callback

    def _on_disconnect(self, client: BleakClient) -> None:
        """Wake every waiter when the device goes away."""
        _LOGGER.debug("Link to %s dropped", self.device.address)
        self._dropped = True
        for queue in self._queues.values():
            queue.put_nowait(None)

    def _require_connected(self) -> BleakClient:
        if self._dropped or not self._client or not self._client.is_connected:
            raise BLEConnectionError(f"Not connected to {self.device.address}")
        return self._client

    async def write(self, characteristic: str, data: bytes) -> None:
        """Write to a transfer characteristic, waiting for write confirmation.

        Raises:
            BLEConnectionError: If not connected or write fails
        """
        client = self._require_connected()
        target = self._characteristics.get(characteristic.lower())
        if target is None:
            raise BLEConnectionError(f"Characteristic {characteristic} not resolved")

        try:
            await client.write_gatt_char(target, data, response=True)
        except Exception as e:
            raise BLEConnectionError(f"Write failed: {e}") from e

    async def await_notification(self, characteristic: str, timeout: float = 5.0) -> bytes:
        """Read the next notification of a characteristic.

        Raises:
            BLETimeoutError: If no notification received within timeout
            BLEConnectionError: If the link drops while waiting
        """
        queue = self._queues.get(characteristic.lower())
        if queue is None:
            raise BLEConnectionError(f"Not subscribed to {characteristic}")

        if self._dropped and queue.empty():
            raise BLEConnectionError(f"Link to {self.device.address} dropped")

        try:
            data = await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise BLETimeoutError(f"No notification received within {timeout}s") from e

        if data is None:
            raise BLEConnectionError(f"Link to {self.device.address} dropped")
        return data

    @property
    def max_write_size(self) -> int:
        """Largest payload of a single write (negotiated MTU minus ATT header)."""
        client = self._require_connected()
        return client.mtu_size - ATT_HEADER_SIZE

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to device."""
        return not self._dropped and self._client is not None and self._client.is_connected
