"""Test DeviceSession against simulated devices."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from conftest import FakeAdapter, FakeDevice, FakeLink

from rudelctl.config import TransferConfig
from rudelctl.exceptions import ProtocolError
from rudelctl.job import TransferJob
from rudelctl.models.enums import FailureKind, SessionState
from rudelctl.models.payload import Payload, compute_digest
from rudelctl.session import DeviceSession


def _session(device: FakeDevice, payload: Payload, config, **kwargs):
    adapter = FakeAdapter([device])
    job = TransferJob(device=device.info, payload=payload)
    return DeviceSession(job, adapter, config, **kwargs), adapter


@pytest.mark.asyncio
async def test_scenario_a_sequential_acks_complete(payload_1000, fast_config) -> None:
    """1000 bytes at chunk size 100: ten chunks, acks 0..9, finalize ok."""
    device = FakeDevice(address="AA:00:00:00:00:01")
    session, adapter = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert job.error is None
    assert job.chunk_count == 10
    assert device.wire == list(range(10))
    assert device.acked == list(range(10))
    assert bytes(device.received) == payload_1000.data
    assert adapter.open_links == 0


@pytest.mark.asyncio
async def test_scenario_b_nacked_chunk_is_resent(payload_1000, fast_config) -> None:
    """Chunk 4 NACKed twice: sent three times, twelve chunks on the wire."""
    device = FakeDevice(address="AA:00:00:00:00:02", nacks={4: 2})
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert device.wire.count(4) == 3
    assert len(device.wire) == 12
    assert job.chunks_sent == 12
    assert job.retries == {4: 2}


@pytest.mark.asyncio
async def test_scenario_c_retry_budget_exhausted(payload_1000, fast_config) -> None:
    """Chunk 4 NACKed six times exceeds a budget of five."""
    device = FakeDevice(address="AA:00:00:00:00:03", nacks={4: 6})
    session, adapter = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.CHUNK_RETRY_EXHAUSTED
    assert job.cursor == 4
    assert device.acked == [0, 1, 2, 3]
    assert device.wire.count(4) == 6
    assert adapter.open_links == 0


@pytest.mark.asyncio
async def test_windowed_transfer_resends_only_rejected_chunk(payload_1000, fast_config) -> None:
    """With a window of 3, chunks in flight behind a NACK are not resent."""
    device = FakeDevice(address="AA:00:00:00:00:04", nacks={4: 1})
    config = replace(fast_config, window=3)
    session, _ = _session(device, payload_1000, config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert device.acked == list(range(10))
    assert bytes(device.received) == payload_1000.data
    assert device.wire == [0, 1, 2, 3, 4, 5, 6, 4, 7, 8, 9]
    assert job.retries == {4: 1}


@pytest.mark.asyncio
async def test_scenario_b_with_default_config(payload_1000) -> None:
    """The default window keeps scenario B at twelve chunks on the wire."""
    device = FakeDevice(address="AA:00:00:00:00:15", nacks={4: 2})
    session, _ = _session(device, payload_1000, TransferConfig(chunk_size=100))

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert device.wire == [0, 1, 2, 3, 4, 5, 4, 4, 6, 7, 8, 9]
    assert job.chunks_sent == 12
    assert job.retries == {4: 2}
    assert bytes(device.received) == payload_1000.data


@pytest.mark.asyncio
async def test_window_bounds_outstanding_chunks(payload_1000, fast_config) -> None:
    """Never more than `window` chunks sent beyond the cursor."""
    device = FakeDevice(address="AA:00:00:00:00:05")
    config = replace(fast_config, window=2)
    job = TransferJob(device=device.info, payload=payload_1000)
    adapter = FakeAdapter([device])
    outstanding: list[int] = []
    original = device.handle_data

    def tracking(data: bytes):
        outstanding.append(job.chunks_sent + 1 - job.cursor)
        return original(data)

    device.handle_data = tracking  # type: ignore[method-assign]
    await DeviceSession(job, adapter, config).run()

    assert job.state == SessionState.COMPLETE
    assert max(outstanding) <= 2


@pytest.mark.asyncio
async def test_device_reported_mismatch_fails(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:06", finalize="fail")
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.DIGEST_MISMATCH
    assert "digest_mismatch" in job.error.reason


@pytest.mark.asyncio
async def test_echoed_digest_must_match(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:07", finalize="wrong_digest")
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.DIGEST_MISMATCH


@pytest.mark.asyncio
async def test_echoed_matching_digest_completes(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:08", finalize="echo")
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE


@pytest.mark.asyncio
async def test_bytes_changed_after_digest_fail_verification(fast_config) -> None:
    """A digest that does not describe the sent bytes never completes."""
    sent = b"new program" * 20
    stale = Payload(data=sent, digest=compute_digest(b"old program" * 20))
    device = FakeDevice(address="AA:00:00:00:00:09")
    session, _ = _session(device, stale, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.DIGEST_MISMATCH


@pytest.mark.asyncio
async def test_finalize_timeout(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:0A", finalize="silent")
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.FINALIZE_TIMEOUT


@pytest.mark.asyncio
async def test_negotiation_rejected(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:0B", reject_reason=0x03)
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.NEGOTIATION_REJECTED
    assert "duplicate" in job.error.reason
    assert device.wire == []


@pytest.mark.asyncio
async def test_chunk_size_is_smallest_of_preferences(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:0C", chunk_size=40)
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert job.chunk_size == 40
    assert job.chunk_count == 25


@pytest.mark.asyncio
async def test_chunk_size_capped_by_mtu(payload_1000, fast_config) -> None:
    """MTU 23 leaves 20 bytes per write, 12 after the chunk header."""
    device = FakeDevice(address="AA:00:00:00:00:0D", mtu=23)
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert job.chunk_size == 12


@pytest.mark.asyncio
async def test_ack_timeout(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:0E", silent_after=3)
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.ACK_TIMEOUT
    assert job.cursor == 3


@pytest.mark.asyncio
async def test_link_drop_mid_transfer(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:0F", drop_after_writes=5)
    session, adapter = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.LINK_DROPPED
    assert job.negotiated
    assert job.cursor == 5
    assert adapter.open_links == 0


@pytest.mark.asyncio
async def test_connect_timeout(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:10", connect_failures=1)
    session, _ = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.CONNECT_TIMEOUT
    assert not job.negotiated


@pytest.mark.asyncio
async def test_cancel_stops_at_chunk_boundary(payload_1000, fast_config) -> None:
    """Cancelling after three ACKs sends nothing more and keeps cursor at 3."""
    device = FakeDevice(address="AA:00:00:00:00:11")
    cancel = asyncio.Event()

    def on_progress(address: str, acked: int, total: int) -> None:
        if acked == 3:
            cancel.set()

    session, adapter = _session(device, payload_1000, fast_config, cancel=cancel, on_progress=on_progress)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.CANCELLED
    assert job.cursor == 3
    assert device.acked == [0, 1, 2]
    assert device.wire == [0, 1, 2]
    assert adapter.open_links == 0


@pytest.mark.asyncio
async def test_cancel_interrupts_ack_wait(payload_1000, fast_config) -> None:
    """Waiting for a silent device ends on cancel, not on the ack deadline."""
    device = FakeDevice(address="AA:00:00:00:00:12", silent_after=0)
    config = replace(fast_config, ack_timeout=30.0)
    cancel = asyncio.Event()
    session, _ = _session(device, payload_1000, config, cancel=cancel)

    task = asyncio.create_task(session.run())
    await asyncio.sleep(0.05)
    cancel.set()
    job = await asyncio.wait_for(task, timeout=2.0)

    assert job.error.kind == FailureKind.CANCELLED
    assert job.cursor == 0


@pytest.mark.asyncio
async def test_empty_payload_goes_straight_to_verification(fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:13")
    session, _ = _session(device, Payload.from_bytes(b""), fast_config)

    job = await session.run()

    assert job.state == SessionState.COMPLETE
    assert device.wire == []


@pytest.mark.asyncio
async def test_session_cannot_be_reused(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:14")
    session, _ = _session(device, payload_1000, fast_config)
    await session.run()

    with pytest.raises(RuntimeError, match="cannot be reused"):
        await session.run()


@pytest.mark.asyncio
async def test_link_lost_before_chunk_sizing(payload_1000, fast_config) -> None:
    """Losing the link right after BEGIN_OK still ends the session FAILED."""
    device = FakeDevice(address="AA:00:00:00:00:16", drop_after_begin=True)
    session, adapter = _session(device, payload_1000, fast_config)

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.LINK_DROPPED
    assert not job.negotiated
    assert device.wire == []
    assert adapter.open_links == 0


class _GarbledLink(FakeLink):
    async def await_notification(self, characteristic: str, timeout: float) -> bytes:
        raise ProtocolError("notification on unexpected handle")


@pytest.mark.asyncio
async def test_unmapped_link_error_ends_failed(payload_1000, fast_config) -> None:
    device = FakeDevice(address="AA:00:00:00:00:17")
    session, adapter = _session(device, payload_1000, fast_config)
    adapter.link_factory = _GarbledLink

    job = await session.run()

    assert job.state == SessionState.FAILED
    assert job.error.kind == FailureKind.PROTOCOL_VIOLATION
    assert "unexpected handle" in job.error.reason
    assert job.finished_at is not None
    assert adapter.open_links == 0
