"""Per-device outcomes and fleet summary."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .models.enums import FailureKind, SessionState

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferOutcome:
    """Terminal result of one device's transfer."""

    address: str
    name: str | None
    state: SessionState
    error_kind: FailureKind | None = None
    reason: str | None = None
    attempts: int = 1
    chunks_sent: int = 0
    duration: float = 0.0

    def __post_init__(self) -> None:
        if not self.state.is_terminal:
            raise ValueError(f"Outcome state must be terminal, got {self.state.name}")
        if (self.state == SessionState.FAILED) != (self.error_kind is not None):
            raise ValueError("error_kind must be set exactly when the state is FAILED")

    @property
    def succeeded(self) -> bool:
        return self.state == SessionState.COMPLETE


def format_outcome(outcome: TransferOutcome) -> str:
    """Render the one-line report for a device."""
    who = f"{outcome.name} ({outcome.address})" if outcome.name else outcome.address
    if outcome.succeeded:
        return (
            f"{who}: ok ({outcome.chunks_sent} chunks, "
            f"{outcome.duration:.1f}s, {outcome.attempts} attempt(s))"
        )
    return f"{who}: FAILED {outcome.error_kind.label}: {outcome.reason}"


@dataclass(frozen=True)
class FleetSummary:
    """Immutable summary of a finished fleet run."""

    outcomes: tuple[TransferOutcome, ...]
    aborted: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    @property
    def failures_by_kind(self) -> Mapping[FailureKind, int]:
        counts = Counter(
            outcome.error_kind for outcome in self.outcomes if not outcome.succeeded
        )
        return MappingProxyType(dict(counts))

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and self.failed == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.all_succeeded else 1

    def by_address(self) -> Mapping[str, TransferOutcome]:
        return MappingProxyType({outcome.address: outcome for outcome in self.outcomes})

    def describe(self) -> str:
        """One summary line with per-kind failure counts."""
        text = f"{self.succeeded}/{len(self.outcomes)} device(s) succeeded"
        if self.failed:
            kinds = ", ".join(
                f"{kind.label}={count}"
                for kind, count in sorted(self.failures_by_kind.items(), key=lambda kv: kv[0].value)
            )
            text += f", {self.failed} failed ({kinds})"
        if self.aborted:
            text += " [aborted]"
        return text


class ResultAggregator:
    """Collects terminal outcomes as they arrive."""

    def __init__(self) -> None:
        self._outcomes: dict[str, TransferOutcome] = {}
        self._aborted = False

    def record(self, outcome: TransferOutcome) -> None:
        """Add one device's terminal outcome.

        Raises:
            ValueError: If the device already has an outcome
        """
        key = outcome.address.upper()
        if key in self._outcomes:
            raise ValueError(f"Outcome for {outcome.address} already recorded")
        self._outcomes[key] = outcome
        _LOGGER.debug("Recorded %s for %s", outcome.state.name, outcome.address)

    def mark_aborted(self) -> None:
        self._aborted = True

    def __len__(self) -> int:
        return len(self._outcomes)

    def summary(self) -> FleetSummary:
        return FleetSummary(outcomes=tuple(self._outcomes.values()), aborted=self._aborted)
