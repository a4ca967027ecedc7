"""Payload chunking for the object-transfer protocol."""

from __future__ import annotations

import zlib
from collections.abc import Iterator
from dataclasses import dataclass

from ..models.payload import Payload


def crc32(data: bytes | memoryview) -> int:
    """CRC-32 (ISO-HDLC, as zlib) matching the firmware chunk verifier."""
    return zlib.crc32(data) & 0xFFFFFFFF


@dataclass(frozen=True)
class Chunk:
    """One slice of a payload.

    ``data`` is a view into the shared payload buffer; it is copied only when
    framed into a packet.
    """

    sequence: int
    offset: int
    data: memoryview
    crc32: int

    def __len__(self) -> int:
        return len(self.data)


class Chunker:
    """Splits a payload into dense, ordered, size-bounded chunks.

    Chunk ``n`` always covers ``[n * chunk_size, min((n + 1) * chunk_size, total))``,
    so any chunk can be regenerated for retransmission without walking the
    payload. The final chunk may be short; it is never padded.
    """

    def __init__(self, payload: Payload, chunk_size: int):
        """Initialize chunker.

        Args:
            payload: Object to split
            chunk_size: Maximum bytes per chunk

        Raises:
            ValueError: If chunk_size is not positive
        """
        if chunk_size < 1:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.payload = payload
        self.chunk_size = chunk_size
        self._view = memoryview(payload.data)

    @property
    def chunk_count(self) -> int:
        """Number of chunks (ceil(total_length / chunk_size))."""
        return -(-self.payload.total_length // self.chunk_size)

    def chunk_at(self, sequence: int) -> Chunk:
        """Build chunk ``sequence``.

        Raises:
            IndexError: If sequence is outside [0, chunk_count)
        """
        if not 0 <= sequence < self.chunk_count:
            raise IndexError(
                f"Chunk {sequence} out of range (payload has {self.chunk_count} chunks)"
            )
        offset = sequence * self.chunk_size
        data = self._view[offset:offset + self.chunk_size]
        return Chunk(sequence=sequence, offset=offset, data=data, crc32=crc32(data))

    def iter_chunks(self, start: int = 0) -> Iterator[Chunk]:
        """Lazily yield chunks from ``start`` to the end."""
        for sequence in range(start, self.chunk_count):
            yield self.chunk_at(sequence)

    def __iter__(self) -> Iterator[Chunk]:
        return self.iter_chunks()

    def __len__(self) -> int:
        return self.chunk_count
