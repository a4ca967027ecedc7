"""Control characteristic reply parsing."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from ..exceptions import InvalidResponseError
from ..models.payload import DIGEST_SIZE
from .commands import Opcode


@dataclass(frozen=True)
class BeginAccepted:
    chunk_size: int
    token: int


@dataclass(frozen=True)
class BeginRejected:
    reason: int


@dataclass(frozen=True)
class ChunkAck:
    """ACK (``accepted=True``) or NACK for a chunk sequence number."""

    sequence: int
    accepted: bool


@dataclass(frozen=True)
class FinalizeResult:
    """FINALIZE_OK / FINALIZE_FAIL reply.

    ``digest`` is set when the device echoes its recomputed digest.
    ``reason`` is set for failures.
    """

    ok: bool
    digest: bytes | None = None
    reason: int | None = None


def unpack_opcode(data: bytes) -> Opcode:
    """Extract the opcode of a control message.

    Raises:
        InvalidResponseError: If empty or the opcode is unknown
    """
    if not data:
        raise InvalidResponseError("Empty control message")
    try:
        return Opcode(data[0])
    except ValueError as e:
        raise InvalidResponseError(f"Unknown opcode 0x{data[0]:02x}") from e


def _require_length(data: bytes, length: int, what: str) -> None:
    if len(data) < length:
        raise InvalidResponseError(
            f"{what} too short: {len(data)} bytes (need at least {length})"
        )


def parse_begin_response(data: bytes) -> BeginAccepted | BeginRejected:
    """Parse reply to BEGIN.

    Formats:
        BEGIN_OK:     [0x81][chunk_size:2][token:4]
        BEGIN_REJECT: [0xC1][reason:1]
    """
    opcode = unpack_opcode(data)
    if opcode == Opcode.BEGIN_OK:
        _require_length(data, 7, "BEGIN_OK")
        chunk_size, token = struct.unpack_from("<HI", data, 1)
        return BeginAccepted(chunk_size=chunk_size, token=token)
    if opcode == Opcode.BEGIN_REJECT:
        _require_length(data, 2, "BEGIN_REJECT")
        return BeginRejected(reason=data[1])
    raise InvalidResponseError(f"Unexpected reply to BEGIN: {opcode.name}")


def parse_chunk_response(data: bytes) -> ChunkAck:
    """Parse ACK/NACK.

    Format: [0x82 | 0xC2][sequence:4]
    """
    opcode = unpack_opcode(data)
    if opcode not in (Opcode.ACK, Opcode.NACK):
        raise InvalidResponseError(f"Expected ACK or NACK, got {opcode.name}")
    _require_length(data, 5, opcode.name)
    (sequence,) = struct.unpack_from("<I", data, 1)
    return ChunkAck(sequence=sequence, accepted=opcode == Opcode.ACK)


def parse_finalize_response(data: bytes) -> FinalizeResult:
    """Parse reply to FINALIZE.

    Formats:
        FINALIZE_OK:   [0x83] or [0x83][digest:32]
        FINALIZE_FAIL: [0xC3][reason:1]
    """
    opcode = unpack_opcode(data)
    if opcode == Opcode.FINALIZE_OK:
        if len(data) == 1:
            return FinalizeResult(ok=True)
        _require_length(data, 1 + DIGEST_SIZE, "FINALIZE_OK digest")
        return FinalizeResult(ok=True, digest=bytes(data[1:1 + DIGEST_SIZE]))
    if opcode == Opcode.FINALIZE_FAIL:
        _require_length(data, 2, "FINALIZE_FAIL")
        return FinalizeResult(ok=False, reason=data[1])
    raise InvalidResponseError(f"Unexpected reply to FINALIZE: {opcode.name}")
