"""Immutable transfer payload."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from blake3 import blake3

DIGEST_SIZE = 32
MAX_PAYLOAD_SIZE = 0xFFFFFFFF


def compute_digest(data: bytes) -> bytes:
    """Compute the 256-bit BLAKE3 digest the firmware verifies against."""
    return blake3(data).digest(length=DIGEST_SIZE)


@dataclass(frozen=True)
class Payload:
    """Opaque object pushed to devices (program image or config blob).

    The digest is computed once at construction and shared by every session;
    it is never recomputed on the transfer path.

    Attributes:
        data: Payload bytes
        digest: BLAKE3 digest of ``data`` (32 bytes)
        name: Optional label for logging (e.g. file name)
    """

    data: bytes = field(repr=False)
    digest: bytes
    name: str = ""

    def __post_init__(self) -> None:
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(
                f"digest must be {DIGEST_SIZE} bytes, got {len(self.digest)}"
            )
        if len(self.data) > MAX_PAYLOAD_SIZE:
            raise ValueError(
                f"payload too large: {len(self.data)} bytes (max {MAX_PAYLOAD_SIZE})"
            )

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview, name: str = "") -> Payload:
        """Snapshot a buffer and digest it."""
        frozen = bytes(data)
        return cls(data=frozen, digest=compute_digest(frozen), name=name)

    @classmethod
    def from_file(cls, path: str | Path) -> Payload:
        """Load a payload from disk."""
        path = Path(path)
        return cls.from_bytes(path.read_bytes(), name=path.name)

    @property
    def total_length(self) -> int:
        return len(self.data)

    @property
    def digest_hex(self) -> str:
        return self.digest.hex()

    def verify(self) -> bool:
        """Recompute the digest and compare (diagnostics only)."""
        return compute_digest(self.data) == self.digest
