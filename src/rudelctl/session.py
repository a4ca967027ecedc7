"""Device session: the object-transfer protocol state machine for one device."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Final

from .config import TransferConfig
from .exceptions import (
    AdapterUnavailableError,
    BLEConnectionError,
    BLETimeoutError,
    InvalidResponseError,
    InvalidTransitionError,
    ProtocolError,
    RudelctlError,
    TransferError,
)
from .models.enums import FailureKind, SessionEvent, SessionState, describe_reason
from .protocol import (
    CHUNK_HEADER_SIZE,
    CONTROL_CHAR_UUID,
    DATA_CHAR_UUID,
    BeginRejected,
    Chunk,
    Chunker,
    Opcode,
    build_begin_command,
    build_chunk_packet,
    build_finalize_command,
    parse_begin_response,
    parse_chunk_response,
    parse_finalize_response,
)

if TYPE_CHECKING:
    from .job import TransferJob
    from .transport.base import Adapter, Link

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

_TRANSITIONS: Final[dict[tuple[SessionState, SessionEvent], SessionState]] = {
    (SessionState.DISCONNECTED, SessionEvent.START): SessionState.CONNECTING,
    (SessionState.CONNECTING, SessionEvent.LINK_UP): SessionState.NEGOTIATING,
    (SessionState.NEGOTIATING, SessionEvent.NEGOTIATED): SessionState.READY,
    (SessionState.READY, SessionEvent.SEND): SessionState.TRANSFERRING,
    (SessionState.TRANSFERRING, SessionEvent.ALL_ACKED): SessionState.VERIFYING,
    (SessionState.VERIFYING, SessionEvent.VERIFIED): SessionState.COMPLETE,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Compute the next session state.

    Any non-terminal state may FAIL; COMPLETE and FAILED accept nothing.

    Raises:
        InvalidTransitionError: If the event is not valid in this state
    """
    if state.is_terminal:
        raise InvalidTransitionError(f"{state.name} is terminal, cannot handle {event.name}")
    if event == SessionEvent.FAIL:
        return SessionState.FAILED
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(f"{event.name} is not valid in state {state.name}") from None


def _failure_kind_for(error: RudelctlError) -> FailureKind:
    if isinstance(error, AdapterUnavailableError):
        return FailureKind.ADAPTER_UNAVAILABLE
    if isinstance(error, ProtocolError):
        return FailureKind.PROTOCOL_VIOLATION
    return FailureKind.LINK_DROPPED


class DeviceSession:
    """Drives one device through connect, negotiate, push and verify.

    A session runs exactly once; retrying a device means a new session.
    Cancellation is only observed between writes and while waiting for
    notifications, so a chunk write is never torn.

    Usage:
        session = DeviceSession(job, adapter, config, cancel_event)
        job = await session.run()
        if job.state is SessionState.COMPLETE:
            ...
    """

    def __init__(
            self,
            job: TransferJob,
            adapter: Adapter,
            config: TransferConfig | None = None,
            cancel: asyncio.Event | None = None,
            on_progress: ProgressCallback | None = None,
    ):
        """Initialize session.

        Args:
            job: Job whose cursor/attempt/state fields this session owns
            adapter: BLE adapter used to open the link
            config: Transfer policy (default: TransferConfig())
            cancel: Shared fleet cancellation signal
            on_progress: Called as (address, acked_chunks, chunk_count) after each ACK
        """
        self.job = job
        self._adapter = adapter
        self._config = config or TransferConfig()
        self._cancel = cancel or asyncio.Event()
        self._on_progress = on_progress
        self._chunker: Chunker | None = None
        self._used = False

    @property
    def state(self) -> SessionState:
        return self.job.state

    async def run(self) -> TransferJob:
        """Run the transfer to a terminal state.

        Transfer failures are recorded on the job, not raised.

        Returns:
            The job, in COMPLETE or FAILED

        Raises:
            RuntimeError: If the session was already run
        """
        if self._used:
            raise RuntimeError("DeviceSession cannot be reused; start a new session")
        self._used = True

        job = self.job
        job.session_attempts += 1
        job.mark_started()
        _LOGGER.info(
            "Starting transfer of %d bytes to %s (attempt %d)",
            job.payload.total_length,
            job.device.label,
            job.session_attempts,
        )

        try:
            await self._run()
        except TransferError as e:
            self._fail(e)
        except InvalidTransitionError:
            raise
        except RudelctlError as e:
            # link teardown or any other unmapped transport error
            self._fail(TransferError(_failure_kind_for(e), str(e)))
        except asyncio.CancelledError:
            self._fail(TransferError(FailureKind.CANCELLED, "task cancelled"))
            raise
        finally:
            job.mark_finished()

        if job.state == SessionState.COMPLETE:
            _LOGGER.info("Transfer to %s complete (%.1fs)", job.device.label, job.duration)
        return job

    async def _run(self) -> None:
        self._check_cancel()
        self._advance(SessionEvent.START)

        async with AsyncExitStack() as stack:
            link = await self._connect(stack)
            self._advance(SessionEvent.LINK_UP)

            token = await self._negotiate(link)
            self._advance(SessionEvent.NEGOTIATED)

            self._check_cancel()
            self._advance(SessionEvent.SEND)
            await self._transfer(link)
            self._advance(SessionEvent.ALL_ACKED)

            await self._verify(link, token)
            self._advance(SessionEvent.VERIFIED)

    def _advance(self, event: SessionEvent) -> None:
        previous = self.job.state
        self.job.state = transition(previous, event)
        _LOGGER.debug("%s: %s -> %s", self.job.address, previous.name, self.job.state.name)

    def _fail(self, error: TransferError) -> None:
        if self.job.is_terminal:
            return
        self.job.error = error
        self._advance(SessionEvent.FAIL)
        if error.kind == FailureKind.CANCELLED:
            _LOGGER.info("Transfer to %s cancelled", self.job.device.label)
        else:
            _LOGGER.warning("Transfer to %s failed: %s", self.job.device.label, error)

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise TransferError(
                FailureKind.CANCELLED,
                f"cancelled in state {self.job.state.name.lower()}",
            )

    async def _connect(self, stack: AsyncExitStack) -> Link:
        timeout = self._config.connect_timeout
        try:
            return await stack.enter_async_context(
                self._adapter.connect(self.job.device, timeout=timeout)
            )
        except AdapterUnavailableError as e:
            raise TransferError(FailureKind.ADAPTER_UNAVAILABLE, str(e)) from e
        except BLETimeoutError as e:
            raise TransferError(
                FailureKind.CONNECT_TIMEOUT, f"no connection within {timeout}s"
            ) from e
        except BLEConnectionError as e:
            raise TransferError(FailureKind.LINK_DROPPED, str(e)) from e

    async def _write(self, link: Link, characteristic: str, data: bytes) -> None:
        """Write one message; the write itself is never interrupted."""
        self._check_cancel()
        try:
            await link.write(characteristic, data)
        except (BLEConnectionError, BLETimeoutError) as e:
            raise TransferError(FailureKind.LINK_DROPPED, f"write failed: {e}") from e

    async def _receive(
            self,
            link: Link,
            timeout: float,
            timeout_kind: FailureKind,
            what: str,
    ) -> bytes:
        """Wait for a control notification, or for fleet cancellation."""
        self._check_cancel()
        receive = asyncio.ensure_future(link.await_notification(CONTROL_CHAR_UUID, timeout))
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {receive, cancelled},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (receive, cancelled):
                if not task.done():
                    task.cancel()

        if receive not in done:
            self._check_cancel()

        try:
            return receive.result()
        except BLETimeoutError as e:
            raise TransferError(timeout_kind, f"no {what} within {timeout}s") from e
        except BLEConnectionError as e:
            raise TransferError(FailureKind.LINK_DROPPED, str(e)) from e

    async def _negotiate(self, link: Link) -> int:
        """Announce the object and fix the chunk size.

        Returns:
            Transfer token for FINALIZE
        """
        job = self.job
        payload = job.payload
        await self._write(
            link,
            CONTROL_CHAR_UUID,
            build_begin_command(payload.total_length, payload.digest),
        )

        reply = await self._receive(
            link,
            self._config.negotiate_timeout,
            FailureKind.NEGOTIATION_TIMEOUT,
            "BEGIN reply",
        )
        try:
            result = parse_begin_response(reply)
        except InvalidResponseError as e:
            raise TransferError(FailureKind.PROTOCOL_VIOLATION, str(e)) from e

        if isinstance(result, BeginRejected):
            raise TransferError(
                FailureKind.NEGOTIATION_REJECTED,
                f"device rejected transfer: {describe_reason(result.reason)}",
            )

        try:
            link_limit = link.max_write_size - CHUNK_HEADER_SIZE
        except (BLEConnectionError, BLETimeoutError) as e:
            raise TransferError(FailureKind.LINK_DROPPED, f"link lost after BEGIN: {e}") from e
        chunk_size = min(self._config.chunk_size, result.chunk_size, link_limit)
        if chunk_size < 1:
            raise TransferError(
                FailureKind.PROTOCOL_VIOLATION,
                f"no usable chunk size (device={result.chunk_size}, link={link_limit})",
            )

        self._chunker = Chunker(payload, chunk_size)
        job.negotiated = True
        job.chunk_size = chunk_size
        job.chunk_count = self._chunker.chunk_count

        _LOGGER.debug(
            "%s: negotiated chunk_size=%d (%d chunks), token=0x%08x",
            job.address,
            chunk_size,
            job.chunk_count,
            result.token,
        )
        return result.token

    async def _send_chunk(self, link: Link, chunk: Chunk) -> None:
        await self._write(link, DATA_CHAR_UUID, build_chunk_packet(chunk))
        self.job.chunks_sent += 1
        _LOGGER.debug(
            "%s: sent chunk %d (%d bytes, crc=0x%08x)",
            self.job.address,
            chunk.sequence,
            len(chunk),
            chunk.crc32,
        )

    async def _transfer(self, link: Link) -> None:
        """Push chunks with at most ``window`` outstanding.

        ACKs are cumulative and the cursor only moves on an ACK, so it never
        passes an unacknowledged chunk. The device keeps chunks that arrive
        after a rejected one, so a NACK resends only that chunk; it is
        already counted as outstanding, so the window is unchanged.
        """
        job = self.job
        chunker = self._chunker
        count = chunker.chunk_count
        window = self._config.window
        budget = self._config.retry_budget
        next_sequence = job.cursor

        while job.cursor < count:
            while next_sequence < count and next_sequence - job.cursor < window:
                await self._send_chunk(link, chunker.chunk_at(next_sequence))
                next_sequence += 1

            reply = await self._receive(
                link,
                self._config.ack_timeout,
                FailureKind.ACK_TIMEOUT,
                f"acknowledgement for chunk {job.cursor}",
            )
            try:
                ack = parse_chunk_response(reply)
            except InvalidResponseError as e:
                raise TransferError(FailureKind.PROTOCOL_VIOLATION, str(e)) from e

            if ack.sequence >= next_sequence:
                raise TransferError(
                    FailureKind.PROTOCOL_VIOLATION,
                    f"{'ACK' if ack.accepted else 'NACK'} for unsent chunk {ack.sequence}",
                )
            if ack.sequence < job.cursor:
                _LOGGER.debug("%s: ignoring stale reply for chunk %d", job.address, ack.sequence)
                continue

            if ack.accepted:
                self._acknowledge(ack.sequence + 1, count)
                continue

            retries = job.retries.get(ack.sequence, 0) + 1
            job.retries[ack.sequence] = retries
            if retries > budget:
                raise TransferError(
                    FailureKind.CHUNK_RETRY_EXHAUSTED,
                    f"chunk {ack.sequence} rejected {retries} times (budget {budget})",
                )
            _LOGGER.warning(
                "%s: chunk %d rejected by device, resending (retry %d/%d)",
                job.address,
                ack.sequence,
                retries,
                budget,
            )
            await self._send_chunk(link, chunker.chunk_at(ack.sequence))

    def _acknowledge(self, cursor: int, count: int) -> None:
        job = self.job
        job.cursor = cursor
        _LOGGER.debug(
            "%s: acknowledged %d/%d chunks (%.1f%%)",
            job.address,
            cursor,
            count,
            cursor / count * 100,
        )
        if self._on_progress:
            self._on_progress(job.address, cursor, count)

    async def _verify(self, link: Link, token: int) -> None:
        """Ask the device to check the whole-object digest."""
        payload = self.job.payload
        await self._write(link, CONTROL_CHAR_UUID, build_finalize_command(token))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.finalize_timeout
        while True:
            remaining = max(deadline - loop.time(), 0.0)
            reply = await self._receive(
                link,
                remaining,
                FailureKind.FINALIZE_TIMEOUT,
                "FINALIZE reply",
            )
            if reply and reply[0] in (Opcode.ACK, Opcode.NACK):
                _LOGGER.debug("%s: ignoring late chunk reply during verification", self.job.address)
                continue
            break

        try:
            result = parse_finalize_response(reply)
        except InvalidResponseError as e:
            raise TransferError(FailureKind.PROTOCOL_VIOLATION, str(e)) from e

        if not result.ok:
            raise TransferError(
                FailureKind.DIGEST_MISMATCH,
                f"device verification failed: {describe_reason(result.reason)}",
            )
        if result.digest is not None and result.digest != payload.digest:
            raise TransferError(
                FailureKind.DIGEST_MISMATCH,
                f"device digest {result.digest.hex()} != expected {payload.digest_hex}",
            )
