"""Transfer policy configuration."""

from __future__ import annotations

from dataclasses import dataclass, replace


def _check_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True, slots=True)
class TransferConfig:
    """Policy knobs for sessions and the fleet orchestrator.

    The right values depend on the radio environment; defaults are
    conservative.

    Attributes:
        chunk_size: Preferred chunk payload size in bytes (upper bound)
        window: Maximum chunks sent but not yet acknowledged
        retry_budget: Retransmissions allowed per chunk before giving up
        concurrency: Maximum simultaneously connected sessions
        connect_timeout: Deadline for establishing the link (s)
        negotiate_timeout: Deadline for the BEGIN reply (s)
        ack_timeout: Deadline for each chunk acknowledgement (s)
        finalize_timeout: Deadline for the FINALIZE reply (s)
        scan_duration: Discovery window (s)
        session_attempts: Sessions per device for transient failures
        backoff_base: First resubmission delay (s), doubled per attempt
        backoff_max: Upper bound of the resubmission delay (s)
        abort_on_failure: Cancel the whole fleet on the first failed device
        connect_max_attempts: Connection attempts inside bleak-retry-connector
    """

    chunk_size: int = 200
    window: int = 2
    retry_budget: int = 5
    concurrency: int = 3
    connect_timeout: float = 10.0
    negotiate_timeout: float = 5.0
    ack_timeout: float = 5.0
    finalize_timeout: float = 30.0
    scan_duration: float = 5.0
    session_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    abort_on_failure: bool = False
    connect_max_attempts: int = 2

    def __post_init__(self) -> None:
        if not 1 <= self.chunk_size <= 0xFFFF:
            raise ValueError(f"chunk_size out of range: {self.chunk_size} (must be 1-65535)")
        if not 1 <= self.window <= 16:
            raise ValueError(f"window out of range: {self.window} (must be 1-16)")
        if self.retry_budget < 0:
            raise ValueError(f"retry_budget must not be negative, got {self.retry_budget}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.session_attempts < 1:
            raise ValueError(f"session_attempts must be at least 1, got {self.session_attempts}")
        if self.connect_max_attempts < 1:
            raise ValueError(
                f"connect_max_attempts must be at least 1, got {self.connect_max_attempts}"
            )
        for name in (
            "connect_timeout",
            "negotiate_timeout",
            "ack_timeout",
            "finalize_timeout",
            "scan_duration",
        ):
            _check_positive(name, getattr(self, name))
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff delays must not be negative")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before session attempt ``attempt + 1`` (attempt is 1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def with_overrides(self, **changes: object) -> TransferConfig:
        """Copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
