"""Transfer job: one payload bound to one device."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .exceptions import TransferError
from .models.device import DeviceInfo
from .models.enums import SessionState
from .models.payload import Payload
from .results import TransferOutcome


@dataclass
class TransferJob:
    """Mutable progress record, owned by exactly one running session.

    Attributes:
        device: Target device
        payload: Shared read-only payload
        cursor: Next sequence number awaiting acknowledgement
        retries: Retransmission count per sequence number
        state: Current session state
        error: Failure detail once FAILED
        session_attempts: Sessions started for this job
        negotiated: Whether the current session got past BEGIN
        chunk_size: Chunk size fixed by negotiation
        chunk_count: Number of chunks at that chunk size
        chunks_sent: Chunk packets written across all sessions
    """

    device: DeviceInfo
    payload: Payload
    cursor: int = 0
    retries: dict[int, int] = field(default_factory=dict)
    state: SessionState = SessionState.DISCONNECTED
    error: TransferError | None = None
    session_attempts: int = 0
    negotiated: bool = False
    chunk_size: int | None = None
    chunk_count: int | None = None
    chunks_sent: int = 0
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def reset_for_retry(self) -> None:
        """Prepare for a brand-new session after a transient failure.

        Progress does not carry over: the device starts a fresh object for
        every BEGIN.
        """
        self.cursor = 0
        self.retries.clear()
        self.state = SessionState.DISCONNECTED
        self.error = None
        self.negotiated = False
        self.chunk_size = None
        self.chunk_count = None
        self.finished_at = None

    def mark_started(self) -> None:
        if self.started_at is None:
            self.started_at = time.monotonic()

    def mark_finished(self) -> None:
        self.finished_at = time.monotonic()

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def outcome(self) -> TransferOutcome:
        """Snapshot the terminal result.

        Raises:
            RuntimeError: If the job is not terminal
        """
        if not self.is_terminal:
            raise RuntimeError(f"Job for {self.address} is not terminal ({self.state.name})")
        return TransferOutcome(
            address=self.address,
            name=self.device.name,
            state=self.state,
            error_kind=self.error.kind if self.error else None,
            reason=self.error.reason if self.error else None,
            attempts=max(self.session_attempts, 1),
            chunks_sent=self.chunks_sent,
            duration=self.duration,
        )
