"""Simulated rudelblinken devices for exercising sessions without a radio."""

from __future__ import annotations

import asyncio
import struct
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import pytest

from rudelctl.config import TransferConfig
from rudelctl.exceptions import AdapterUnavailableError, BLEConnectionError, BLETimeoutError
from rudelctl.models.device import DeviceInfo
from rudelctl.models.payload import Payload, compute_digest
from rudelctl.protocol import CONTROL_CHAR_UUID, DATA_CHAR_UUID, SERVICE_UUID, Opcode, crc32


@dataclass
class FakeDevice:
    """Firmware-side behaviour of one device.

    Chunks arriving after a rejected one are buffered; ACKs are cumulative
    and only sent when the contiguous prefix grows.
    """

    address: str
    name: str = "rb-test"
    chunk_size: int = 100
    token: int = 0x1234ABCD
    mtu: int = 247
    nacks: dict[int, int] = field(default_factory=dict)
    reject_reason: int | None = None
    finalize: str = "ok"  # ok | echo | wrong_digest | fail | silent
    silent_after: int | None = None  # stop acknowledging from this sequence
    drop_after_writes: int | None = None  # data writes before the link drops
    drop_after_begin: bool = False  # link gone before the chunk size is fixed
    connect_failures: int = 0
    connect_error: type[Exception] = BLETimeoutError
    write_delay: float = 0.0
    service_uuids: list[str] = field(default_factory=lambda: [SERVICE_UUID])

    begin: tuple[int, bytes] | None = None
    received: bytearray = field(default_factory=bytearray)
    expected: int = 0
    pending: dict[int, bytes] = field(default_factory=dict)
    wire: list[int] = field(default_factory=list)
    acked: list[int] = field(default_factory=list)
    control_log: list[bytes] = field(default_factory=list)
    connects: int = 0

    @property
    def info(self) -> DeviceInfo:
        return DeviceInfo(address=self.address, name=self.name, rssi=-60)

    def reset_transfer(self) -> None:
        self.begin = None
        self.received = bytearray()
        self.expected = 0
        self.pending = {}

    def handle_control(self, data: bytes) -> bytes | None:
        self.control_log.append(data)
        opcode = data[0]
        if opcode == Opcode.BEGIN:
            _, length, digest = struct.unpack("<BI32s", data)
            if self.reject_reason is not None:
                return bytes([Opcode.BEGIN_REJECT, self.reject_reason])
            self.reset_transfer()
            self.begin = (length, digest)
            return struct.pack("<BHI", Opcode.BEGIN_OK, self.chunk_size, self.token)
        if opcode == Opcode.FINALIZE:
            (token,) = struct.unpack_from("<I", data, 1)
            assert token == self.token
            actual = compute_digest(bytes(self.received))
            matches = self.begin is not None and actual == self.begin[1]
            if self.finalize == "silent":
                return None
            if self.finalize == "fail" or not matches:
                return bytes([Opcode.FINALIZE_FAIL, 0x05])
            if self.finalize == "echo":
                return bytes([Opcode.FINALIZE_OK]) + actual
            if self.finalize == "wrong_digest":
                return bytes([Opcode.FINALIZE_OK]) + bytes(32)
            return bytes([Opcode.FINALIZE_OK])
        raise AssertionError(f"unexpected control opcode 0x{opcode:02x}")

    def handle_data(self, data: bytes) -> bytes | None:
        sequence, checksum = struct.unpack_from("<II", data)
        body = data[8:]
        self.wire.append(sequence)
        assert len(body) <= self.chunk_size
        if sequence < self.expected or sequence in self.pending:
            return None  # duplicate
        if self.silent_after is not None and sequence >= self.silent_after:
            return None
        if checksum != crc32(body) or self.nacks.get(sequence, 0) > 0:
            if self.nacks.get(sequence, 0) > 0:
                self.nacks[sequence] -= 1
            return struct.pack("<BI", Opcode.NACK, sequence)
        self.pending[sequence] = body
        if sequence != self.expected:
            return None  # buffered behind a rejected chunk
        while self.expected in self.pending:
            self.received.extend(self.pending.pop(self.expected))
            self.acked.append(self.expected)
            self.expected += 1
        return struct.pack("<BI", Opcode.ACK, self.expected - 1)


class FakeLink:
    """In-memory link to a FakeDevice."""

    def __init__(self, device: FakeDevice):
        self.device = device
        self.notifications: asyncio.Queue[bytes] = asyncio.Queue()
        self.data_writes = 0
        self.dropped = False

    @property
    def max_write_size(self) -> int:
        if self.device.drop_after_begin and self.device.begin is not None:
            self.dropped = True
            raise BLEConnectionError("Not connected")
        return self.device.mtu - 3

    async def write(self, characteristic: str, data: bytes) -> None:
        if self.dropped:
            raise BLEConnectionError("Not connected")
        if self.device.write_delay:
            await asyncio.sleep(self.device.write_delay)
        else:
            await asyncio.sleep(0)
        if characteristic == CONTROL_CHAR_UUID:
            reply = self.device.handle_control(data)
        elif characteristic == DATA_CHAR_UUID:
            limit = self.device.drop_after_writes
            if limit is not None and self.data_writes >= limit:
                self.dropped = True
                raise BLEConnectionError("Write failed: link lost")
            self.data_writes += 1
            reply = self.device.handle_data(data)
        else:
            raise AssertionError(f"unknown characteristic {characteristic}")
        if reply is not None:
            self.notifications.put_nowait(reply)

    async def await_notification(self, characteristic: str, timeout: float) -> bytes:
        assert characteristic == CONTROL_CHAR_UUID
        try:
            return await asyncio.wait_for(self.notifications.get(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise BLETimeoutError(f"No notification received within {timeout}s") from e


class FakeAdapter:
    """Adapter over a set of FakeDevices, tracking simultaneous links."""

    def __init__(self, devices: list[FakeDevice], unavailable: bool = False):
        self.devices = {device.address: device for device in devices}
        self.scan_results = [device.info for device in devices]
        self.unavailable = unavailable
        self.open_links = 0
        self.peak_links = 0
        self.connect_order: list[str] = []
        self.link_factory = FakeLink

    async def scan(self, device_filter, duration: float) -> list[DeviceInfo]:
        if self.unavailable:
            raise AdapterUnavailableError("No Bluetooth adapters found")
        return [
            info for info in self.scan_results
            if device_filter.matches(
                info.address, info.name, self.devices[info.address].service_uuids
            )
        ]

    @asynccontextmanager
    async def connect(self, device: DeviceInfo, timeout: float):
        fake = self.devices[device.address]
        fake.connects += 1
        self.connect_order.append(device.address)
        if self.unavailable:
            raise AdapterUnavailableError("No Bluetooth adapters found")
        await asyncio.sleep(0)
        if fake.connect_failures > 0:
            fake.connect_failures -= 1
            raise fake.connect_error(f"Connection to {device.address} failed")
        self.open_links += 1
        self.peak_links = max(self.peak_links, self.open_links)
        try:
            yield self.link_factory(fake)
        finally:
            self.open_links -= 1


def make_devices(count: int, **kwargs) -> list[FakeDevice]:
    return [
        FakeDevice(address=f"AA:BB:CC:DD:EE:{index:02X}", name=f"rb-{index}", **kwargs)
        for index in range(count)
    ]


@pytest.fixture
def payload_1000() -> Payload:
    return Payload.from_bytes(bytes(range(256)) * 3 + bytes(232), name="program.wasm")


@pytest.fixture
def fast_config() -> TransferConfig:
    return TransferConfig(
        chunk_size=100,
        window=1,
        retry_budget=5,
        concurrency=3,
        connect_timeout=0.5,
        negotiate_timeout=0.2,
        ack_timeout=0.2,
        finalize_timeout=0.2,
        scan_duration=0.1,
        session_attempts=3,
        backoff_base=0.01,
        backoff_max=0.05,
    )
