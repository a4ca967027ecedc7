from __future__ import annotations

from enum import Enum, IntEnum
from typing import Final


class SessionState(Enum):
    """Lifecycle of one device session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    READY = "ready"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.FAILED)

    @property
    def is_connected_phase(self) -> bool:
        """True while the session holds (or is acquiring) a radio link."""
        return self in _CONNECTED_PHASE


_CONNECTED_PHASE: Final[frozenset[SessionState]] = frozenset({
    SessionState.CONNECTING,
    SessionState.NEGOTIATING,
    SessionState.READY,
    SessionState.TRANSFERRING,
    SessionState.VERIFYING,
})


class SessionEvent(Enum):
    """Events driving the session state machine."""
    START = "start"
    LINK_UP = "link_up"
    NEGOTIATED = "negotiated"
    SEND = "send"
    ALL_ACKED = "all_acked"
    VERIFIED = "verified"
    FAIL = "fail"


class FailureKind(Enum):
    """Why a transfer ended in FAILED."""
    CONNECT_TIMEOUT = "ConnectTimeout"
    NEGOTIATION_REJECTED = "NegotiationRejected"
    NEGOTIATION_TIMEOUT = "NegotiationTimeout"
    LINK_DROPPED = "LinkDropped"
    ACK_TIMEOUT = "AckTimeout"
    CHUNK_RETRY_EXHAUSTED = "ChunkRetryExhausted"
    DIGEST_MISMATCH = "DigestMismatch"
    FINALIZE_TIMEOUT = "FinalizeTimeout"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    CANCELLED = "Cancelled"
    ADAPTER_UNAVAILABLE = "AdapterUnavailable"

    @property
    def label(self) -> str:
        return self.value

    @property
    def is_transient(self) -> bool:
        """Connection-phase failures that a fresh session may overcome."""
        return self in _TRANSIENT_KINDS

    @property
    def is_content_error(self) -> bool:
        """Failures that may indicate a corrupt payload or a faulty device."""
        return self in _CONTENT_KINDS


_TRANSIENT_KINDS: Final[frozenset[FailureKind]] = frozenset({
    FailureKind.CONNECT_TIMEOUT,
    FailureKind.NEGOTIATION_TIMEOUT,
    FailureKind.LINK_DROPPED,
})

_CONTENT_KINDS: Final[frozenset[FailureKind]] = frozenset({
    FailureKind.CHUNK_RETRY_EXHAUSTED,
    FailureKind.DIGEST_MISMATCH,
    FailureKind.FINALIZE_TIMEOUT,
    FailureKind.PROTOCOL_VIOLATION,
})


class RejectReason(IntEnum):
    """Reason codes carried by BEGIN_REJECT and FINALIZE_FAIL."""
    UNSPECIFIED = 0x00
    BUSY = 0x01
    TOO_LARGE = 0x02
    DUPLICATE = 0x03
    STALE_TOKEN = 0x04
    DIGEST_MISMATCH = 0x05
    STORAGE_ERROR = 0x06


def describe_reason(code: int) -> str:
    """Get a printable name for a reject/fail reason code."""
    try:
        return RejectReason(code).name.lower()
    except ValueError:
        return f"unknown (0x{code:02x})"
