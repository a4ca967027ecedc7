"""First-time provisioning of bare devices over serial.

Flashing is delegated to the ``espflash`` tool; rudelctl never builds
partition tables itself.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from .exceptions import ProvisioningError

_LOGGER = logging.getLogger(__name__)


def build_espflash_command(
        port: str,
        image: Path,
        *,
        baud: int | None = None,
        espflash: str = "espflash",
) -> list[str]:
    """Build the espflash invocation for one image."""
    command = [espflash, "flash", "--port", port]
    if baud is not None:
        command += ["--baud", str(baud)]
    command.append(str(image))
    return command


async def flash_firmware(
        port: str,
        image: str | Path,
        *,
        baud: int | None = None,
        espflash: str = "espflash",
) -> None:
    """Flash a firmware image to the device on a serial port.

    Args:
        port: Serial port (e.g. /dev/ttyACM0)
        image: Firmware ELF image
        baud: Optional flashing baud rate
        espflash: espflash executable name or path

    Raises:
        ProvisioningError: If the image or tool is missing, or flashing fails
    """
    image = Path(image)
    if not image.is_file():
        raise ProvisioningError(f"Firmware image {image} not found")

    executable = shutil.which(espflash)
    if executable is None:
        raise ProvisioningError(f"{espflash} not found in PATH; install it with 'cargo install espflash'")

    command = build_espflash_command(port, image, baud=baud, espflash=executable)
    _LOGGER.info("Flashing %s to %s", image.name, port)
    _LOGGER.debug("Running %s", " ".join(command))

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise ProvisioningError(f"Failed to start {espflash}: {e}") from e

    assert process.stdout is not None
    try:
        async for line in process.stdout:
            _LOGGER.info("espflash: %s", line.decode(errors="replace").rstrip())
        returncode = await process.wait()
    finally:
        if process.returncode is None:
            _LOGGER.warning("Stopping %s", espflash)
            process.kill()
            await process.wait()

    if returncode != 0:
        raise ProvisioningError(f"{espflash} exited with status {returncode}")

    _LOGGER.info("Flashed %s to %s", image.name, port)
