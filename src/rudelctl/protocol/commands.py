"""Object-transfer protocol commands for rudelblinken devices."""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import TYPE_CHECKING

from ..models.payload import DIGEST_SIZE

if TYPE_CHECKING:
    from .chunking import Chunk


class Opcode(IntEnum):
    """Control characteristic opcodes.

    Requests have the high bit clear, replies have it set; 0xC0-prefixed
    replies signal rejection.
    """

    # Requests (controller -> device)
    BEGIN = 0x01          # Announce object length and digest
    FINALIZE = 0x03       # All chunks acknowledged, verify object

    # Replies (device -> controller)
    BEGIN_OK = 0x81       # Accepted; carries chunk size and transfer token
    ACK = 0x82            # Chunk(s) up to sequence stored
    FINALIZE_OK = 0x83    # Digest verified
    BEGIN_REJECT = 0xC1   # Transfer refused
    NACK = 0xC2           # Chunk CRC mismatch, resend sequence
    FINALIZE_FAIL = 0xC3  # Digest mismatch or storage error


# Protocol constants
SERVICE_UUID = "2c7b0000-4f25-4d2c-9a3e-726e64656c00"
CONTROL_CHAR_UUID = "2c7b0001-4f25-4d2c-9a3e-726e64656c00"
DATA_CHAR_UUID = "2c7b0002-4f25-4d2c-9a3e-726e64656c00"
MANUFACTURER_ID = 0x0FFF  # Firmware version marker lives here

# Framing constants (all little-endian)
BEGIN_FORMAT = f"<BI{DIGEST_SIZE}s"
FINALIZE_FORMAT = "<BI"
CHUNK_HEADER_FORMAT = "<II"
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FORMAT)  # sequence + crc32
ATT_HEADER_SIZE = 3  # ATT opcode + handle, subtracted from the MTU


def build_begin_command(total_length: int, digest: bytes) -> bytes:
    """Build command announcing a new object transfer.

    Args:
        total_length: Object length in bytes
        digest: 32-byte BLAKE3 digest of the whole object

    Returns:
        Command bytes: [opcode:1][total_length:4][digest:32]
    """
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"Digest must be {DIGEST_SIZE} bytes, got {len(digest)}")
    if not 0 <= total_length <= 0xFFFFFFFF:
        raise ValueError(f"Total length {total_length} does not fit in u32")

    return struct.pack(BEGIN_FORMAT, Opcode.BEGIN, total_length, digest)


def build_chunk_packet(chunk: Chunk) -> bytes:
    """Build a data characteristic packet for one chunk.

    Format:
        [sequence:4][crc32:4][payload:variable]
    """
    return struct.pack(CHUNK_HEADER_FORMAT, chunk.sequence, chunk.crc32) + bytes(chunk.data)


def build_finalize_command(token: int) -> bytes:
    """Build command asking the device to verify the received object.

    Args:
        token: Transfer token returned in BEGIN_OK

    Returns:
        Command bytes: [opcode:1][token:4]
    """
    return struct.pack(FINALIZE_FORMAT, Opcode.FINALIZE, token)
