"""Data models for rudelctl."""

from .device import DeviceInfo
from .enums import (
    FailureKind,
    RejectReason,
    SessionEvent,
    SessionState,
    describe_reason,
)
from .payload import DIGEST_SIZE, Payload, compute_digest

__all__ = [
    "DIGEST_SIZE",
    "DeviceInfo",
    "FailureKind",
    "Payload",
    "RejectReason",
    "SessionEvent",
    "SessionState",
    "compute_digest",
    "describe_reason",
]
