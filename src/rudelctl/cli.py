"""rudelctl command line.

Usage:
    rudelctl scan --duration 10
    rudelctl push program.wasm --name "rb-*" --concurrency 4
    rudelctl flash /dev/ttyACM0 firmware.elf
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Callable

from . import __version__
from .config import TransferConfig
from .discovery import DeviceFilter
from .exceptions import AdapterUnavailableError, ProvisioningError
from .fleet import FleetOrchestrator
from .models.payload import Payload
from .protocol import SERVICE_UUID
from .provisioning import flash_firmware
from .results import TransferOutcome, format_outcome
from .transport import BleakAdapter

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

_LOGGER = logging.getLogger(__name__)


def _device_filter(args: argparse.Namespace) -> DeviceFilter:
    service = None if args.any_service else args.service
    return DeviceFilter(
        name_pattern=args.name,
        service_uuid=service,
        addresses=frozenset(args.address or ()),
    )


def _transfer_config(args: argparse.Namespace) -> TransferConfig:
    return TransferConfig().with_overrides(
        scan_duration=args.scan_time,
        concurrency=getattr(args, "concurrency", None),
        window=getattr(args, "window", None),
        retry_budget=getattr(args, "retries", None),
        chunk_size=getattr(args, "chunk_size", None),
        session_attempts=getattr(args, "attempts", None),
        abort_on_failure=getattr(args, "abort_on_failure", None) or None,
    )


def _print_outcome(outcome: TransferOutcome) -> None:
    print(format_outcome(outcome), flush=True)


def _install_interrupt_handler(callback: Callable[[], None]) -> bool:
    """Route Ctrl+C to the fleet cancel signal instead of killing tasks."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def scan_command(args: argparse.Namespace) -> int:
    """List devices that match the selection filter."""
    try:
        config = _transfer_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    adapter = BleakAdapter()
    try:
        devices = await adapter.scan(_device_filter(args), config.scan_duration)
    except AdapterUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if not devices:
        print("No matching devices found")
        return EXIT_OK

    for device in devices:
        print(
            f"{device.address}  {device.name or '<unnamed>':<24} "
            f"rssi={device.rssi} firmware={device.firmware or '?'}"
        )
    return EXIT_OK


async def push_command(args: argparse.Namespace) -> int:
    """Push a payload to every matching device."""
    try:
        config = _transfer_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        payload = Payload.from_file(args.payload)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load {args.payload}: {e}", file=sys.stderr)
        return EXIT_FAILURE

    orchestrator = FleetOrchestrator(
        BleakAdapter(max_attempts=config.connect_max_attempts),
        config,
        on_outcome=_print_outcome,
    )
    interrupted = False

    def on_interrupt() -> None:
        nonlocal interrupted
        interrupted = True
        orchestrator.cancel("interrupted")

    handler_installed = _install_interrupt_handler(on_interrupt)

    try:
        devices = await orchestrator.discover(_device_filter(args))
        if not devices:
            print("No matching devices found", file=sys.stderr)
            return EXIT_FAILURE

        print(f"Pushing {payload.name} ({payload.total_length} bytes) to {len(devices)} device(s)")
        summary = await orchestrator.run_devices(payload, devices)
    except AdapterUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        if handler_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    print(summary.describe())
    if interrupted:
        return EXIT_INTERRUPTED
    return summary.exit_code


async def flash_command(args: argparse.Namespace) -> int:
    """Flash firmware to a bare device over serial."""
    try:
        await flash_firmware(args.port, args.image, baud=args.baud, espflash=args.espflash)
    except ProvisioningError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Flashed {args.image} to {args.port}")
    return EXIT_OK


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--name",
        help="Only devices whose advertised name matches this glob (e.g. 'rb-*')",
    )
    parser.add_argument(
        "--address",
        action="append",
        help="Only this device address (repeatable)",
    )
    parser.add_argument(
        "--service",
        default=SERVICE_UUID,
        help=f"Advertised service UUID to require. Default: {SERVICE_UUID}",
    )
    parser.add_argument(
        "--any-service",
        action="store_true",
        help="Do not require the service UUID in advertisements",
    )
    parser.add_argument(
        "--scan-time",
        type=float,
        default=None,
        help="Scan duration in seconds. Default: 5",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rudelctl",
        description="Discover rudelblinken devices and push programs to them over BLE.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="More logging (-v info, -vv debug)",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="List nearby devices")
    _add_filter_arguments(scan)
    scan.set_defaults(handler=scan_command)

    push = subparsers.add_parser("push", help="Push a program or config blob to devices")
    push.add_argument("payload", help="File to upload (e.g. a .wasm program)")
    _add_filter_arguments(push)
    push.add_argument(
        "--concurrency",
        type=int,
        help="Maximum simultaneous connections. Default: 3",
    )
    push.add_argument(
        "--window",
        type=int,
        help="Unacknowledged chunks in flight per device. Default: 2",
    )
    push.add_argument(
        "--retries",
        type=int,
        help="Retransmissions per chunk before giving up. Default: 5",
    )
    push.add_argument(
        "--chunk-size",
        type=int,
        help="Preferred chunk size in bytes (capped by device and MTU). Default: 200",
    )
    push.add_argument(
        "--attempts",
        type=int,
        help="Sessions per device for connection failures. Default: 3",
    )
    push.add_argument(
        "--abort-on-failure",
        action="store_true",
        help="Cancel all transfers as soon as one device fails",
    )
    push.set_defaults(handler=push_command)

    flash = subparsers.add_parser("flash", help="Flash firmware to a bare device over serial")
    flash.add_argument("port", help="Serial port, e.g. /dev/ttyACM0")
    flash.add_argument("image", help="Firmware image")
    flash.add_argument("--baud", type=int, help="Flashing baud rate")
    flash.add_argument("--espflash", default="espflash", help="espflash executable")
    flash.set_defaults(handler=flash_command)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def setup_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # bleak is chatty at debug level
    if level > logging.DEBUG:
        logging.getLogger("bleak").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.quiet)
    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
