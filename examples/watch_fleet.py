"""Push a payload to nearby devices, printing live per-chunk progress.

Usage:
    uv run python examples/watch_fleet.py program.wasm --name "rb-*"
    uv run python examples/watch_fleet.py config.bin --concurrency 5 --window 4
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime

from rudelctl import DeviceFilter, FleetOrchestrator, Payload, TransferConfig
from rudelctl.results import TransferOutcome, format_outcome
from rudelctl.transport import BleakAdapter


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


class ProgressPrinter:
    """Print a line whenever a device crosses another 25%."""

    def __init__(self) -> None:
        self._last_quarter: dict[str, int] = {}

    def progress(self, address: str, acked: int, total: int) -> None:
        quarter = acked * 4 // total
        if quarter > self._last_quarter.get(address, 0):
            self._last_quarter[address] = quarter
            print(f"[{_timestamp()}] {address}: {acked}/{total} chunks ({quarter * 25}%)")

    def outcome(self, outcome: TransferOutcome) -> None:
        print(f"[{_timestamp()}] {format_outcome(outcome)}")


async def push(path: str, name: str | None, config: TransferConfig) -> int:
    printer = ProgressPrinter()
    orchestrator = FleetOrchestrator(
        BleakAdapter(max_attempts=config.connect_max_attempts),
        config,
        on_outcome=printer.outcome,
        on_progress=printer.progress,
    )
    payload = Payload.from_file(path)
    print(f"Payload {payload.name}: {payload.total_length} bytes, blake3 {payload.digest_hex}")

    summary = await orchestrator.run(payload, DeviceFilter(name_pattern=name))

    print("\nSummary:")
    print(f"  {summary.describe()}")
    print(f"  peak_sessions={orchestrator.peak_sessions}")
    return summary.exit_code


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Push a payload to rudelblinken devices.")
    parser.add_argument("payload", help="File to push")
    parser.add_argument("--name", help="Advertised name glob")
    parser.add_argument("--concurrency", type=int, default=3, help="Simultaneous connections. Default: 3")
    parser.add_argument("--window", type=int, default=2, help="Chunks in flight per device. Default: 2")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)
    config = TransferConfig(concurrency=args.concurrency, window=args.window)
    try:
        raise SystemExit(asyncio.run(push(args.payload, args.name, config)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
