"""Fleet orchestrator: concurrent transfers to many devices."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from .config import TransferConfig
from .discovery import DeviceFilter, dedupe_devices
from .exceptions import TransferError
from .job import TransferJob
from .models.enums import FailureKind, SessionEvent, SessionState
from .results import FleetSummary, ResultAggregator, TransferOutcome
from .session import DeviceSession, ProgressCallback, transition

if TYPE_CHECKING:
    from .models.device import DeviceInfo
    from .models.payload import Payload
    from .transport.base import Adapter

_LOGGER = logging.getLogger(__name__)

OutcomeCallback = Callable[[TransferOutcome], None]


class FleetOrchestrator:
    """Pushes one payload to every selected device.

    - Sessions are admitted through one semaphore sized to the adapter's
      connection budget, FIFO in discovery order, refilled as slots free up
    - Transient connection failures get a fresh session after a backoff
    - One shared event cancels every in-flight session at its next boundary
    - Outcomes stream to the result aggregator as devices finish

    Usage:
        orchestrator = FleetOrchestrator(BleakAdapter(), TransferConfig(concurrency=3))
        summary = await orchestrator.run(Payload.from_file("program.wasm"), DeviceFilter())
    """

    def __init__(
            self,
            adapter: Adapter,
            config: TransferConfig | None = None,
            on_outcome: OutcomeCallback | None = None,
            on_progress: ProgressCallback | None = None,
    ):
        self._adapter = adapter
        self.config = config or TransferConfig()
        self._on_outcome = on_outcome
        self._on_progress = on_progress
        self._cancel = asyncio.Event()
        self._aborted = False
        self._active = 0
        self._peak = 0

    @property
    def active_sessions(self) -> int:
        """Sessions currently holding an admission slot."""
        return self._active

    @property
    def peak_sessions(self) -> int:
        """Highest number of simultaneously admitted sessions so far."""
        return self._peak

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Cancel every queued and in-flight transfer."""
        if not self._cancel.is_set():
            _LOGGER.warning("Cancelling fleet: %s", reason)
            self._aborted = True
            self._cancel.set()

    async def discover(self, device_filter: DeviceFilter | None = None) -> list[DeviceInfo]:
        """Scan for target devices.

        Raises:
            AdapterUnavailableError: If the adapter cannot scan
        """
        devices = await self._adapter.scan(
            device_filter or DeviceFilter(),
            self.config.scan_duration,
        )
        return dedupe_devices(devices)

    async def run(
            self,
            payload: Payload,
            device_filter: DeviceFilter | None = None,
    ) -> FleetSummary:
        """Discover devices and push the payload to all of them."""
        devices = await self.discover(device_filter)
        return await self.run_devices(payload, devices)

    async def run_devices(self, payload: Payload, devices: Iterable[DeviceInfo]) -> FleetSummary:
        """Push the payload to the given devices.

        Returns only once every job is terminal.
        """
        jobs = [TransferJob(device=device, payload=payload) for device in dedupe_devices(devices)]
        _LOGGER.info(
            "Pushing %s (%d bytes, blake3 %s) to %d device(s), %d at a time",
            payload.name or "payload",
            payload.total_length,
            payload.digest_hex[:16],
            len(jobs),
            self.config.concurrency,
        )

        semaphore = asyncio.Semaphore(self.config.concurrency)
        completions: asyncio.Queue[TransferOutcome | None] = asyncio.Queue()
        aggregator = ResultAggregator()
        collector = asyncio.create_task(self._collect(completions, aggregator))

        tasks = [asyncio.create_task(self._run_job(job, semaphore, completions)) for job in jobs]
        try:
            await asyncio.gather(*tasks)
        except Exception:
            self.cancel("internal error, stopping remaining transfers")
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            await completions.put(None)
            await collector

        if self._aborted:
            aggregator.mark_aborted()
        summary = aggregator.summary()
        _LOGGER.info("Fleet run finished: %s", summary.describe())
        return summary

    async def _collect(
            self,
            completions: asyncio.Queue[TransferOutcome | None],
            aggregator: ResultAggregator,
    ) -> None:
        while True:
            outcome = await completions.get()
            if outcome is None:
                return
            aggregator.record(outcome)
            if self._on_outcome:
                self._on_outcome(outcome)

    async def _run_job(
            self,
            job: TransferJob,
            semaphore: asyncio.Semaphore,
            completions: asyncio.Queue[TransferOutcome | None],
    ) -> None:
        while True:
            if self._cancel.is_set():
                self._fail_job(job, FailureKind.CANCELLED, "fleet cancelled before transfer started")
                break

            async with semaphore:
                if self._cancel.is_set():
                    self._fail_job(job, FailureKind.CANCELLED, "fleet cancelled before transfer started")
                    break
                self._active += 1
                self._peak = max(self._peak, self._active)
                try:
                    session = DeviceSession(
                        job,
                        self._adapter,
                        self.config,
                        cancel=self._cancel,
                        on_progress=self._on_progress,
                    )
                    await session.run()
                except Exception as e:
                    _LOGGER.exception("Unexpected error during transfer to %s", job.device.label)
                    self._fail_job(job, FailureKind.LINK_DROPPED, f"unexpected error: {e!r}")
                    break
                finally:
                    self._active -= 1

            if not self._should_retry(job):
                break

            delay = self.config.backoff_delay(job.session_attempts)
            _LOGGER.warning(
                "Retrying %s in %.1fs after %s (attempt %d/%d)",
                job.device.label,
                delay,
                job.error.kind.label,
                job.session_attempts + 1,
                self.config.session_attempts,
            )
            if await self._wait_cancelled(delay):
                break
            job.reset_for_retry()

        outcome = job.outcome()
        if not outcome.succeeded:
            if outcome.error_kind == FailureKind.ADAPTER_UNAVAILABLE:
                self.cancel("Bluetooth adapter unavailable")
            elif self.config.abort_on_failure and outcome.error_kind != FailureKind.CANCELLED:
                self.cancel(f"{job.device.label} failed and abort-on-failure is set")
        await completions.put(outcome)

    def _should_retry(self, job: TransferJob) -> bool:
        """Only connection-phase failures get another session."""
        if job.state != SessionState.FAILED or job.error is None:
            return False
        if self._cancel.is_set():
            return False
        if not job.error.kind.is_transient or job.negotiated:
            return False
        return job.session_attempts < self.config.session_attempts

    @staticmethod
    def _fail_job(job: TransferJob, kind: FailureKind, reason: str) -> None:
        """Force a job that no session finished into FAILED."""
        if job.is_terminal:
            return
        job.error = TransferError(kind, reason)
        job.state = transition(job.state, SessionEvent.FAIL)

    async def _wait_cancelled(self, delay: float) -> bool:
        """Sleep for ``delay``; True if the fleet was cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
