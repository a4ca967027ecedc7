"""BLE object-transfer protocol implementation."""

from .chunking import Chunk, Chunker, crc32
from .commands import (
    ATT_HEADER_SIZE,
    CHUNK_HEADER_SIZE,
    CONTROL_CHAR_UUID,
    DATA_CHAR_UUID,
    MANUFACTURER_ID,
    SERVICE_UUID,
    Opcode,
    build_begin_command,
    build_chunk_packet,
    build_finalize_command,
)
from .responses import (
    BeginAccepted,
    BeginRejected,
    ChunkAck,
    FinalizeResult,
    parse_begin_response,
    parse_chunk_response,
    parse_finalize_response,
    unpack_opcode,
)

__all__ = [
    "Opcode",
    "SERVICE_UUID",
    "CONTROL_CHAR_UUID",
    "DATA_CHAR_UUID",
    "MANUFACTURER_ID",
    "ATT_HEADER_SIZE",
    "CHUNK_HEADER_SIZE",
    "build_begin_command",
    "build_chunk_packet",
    "build_finalize_command",
    "Chunk",
    "Chunker",
    "crc32",
    "BeginAccepted",
    "BeginRejected",
    "ChunkAck",
    "FinalizeResult",
    "parse_begin_response",
    "parse_chunk_response",
    "parse_finalize_response",
    "unpack_opcode",
]
