"""rudelctl: push programs to rudelblinken devices over BLE.

  Object-transfer protocol and multi-device orchestration on top of bleak.
  """

from .config import TransferConfig
from .discovery import DeviceFilter, discover_devices
from .exceptions import (
    AdapterUnavailableError,
    BLEConnectionError,
    BLETimeoutError,
    InvalidResponseError,
    InvalidTransitionError,
    ProtocolError,
    ProvisioningError,
    RudelctlError,
    TransferError,
)
from .fleet import FleetOrchestrator
from .job import TransferJob
from .models.device import DeviceInfo
from .models.enums import FailureKind, SessionEvent, SessionState
from .models.payload import Payload
from .protocol import CONTROL_CHAR_UUID, DATA_CHAR_UUID, SERVICE_UUID, Chunk, Chunker
from .provisioning import flash_firmware
from .results import FleetSummary, ResultAggregator, TransferOutcome
from .session import DeviceSession, transition

__version__ = "0.1.0"

__all__ = [
    # Main API
    "FleetOrchestrator",
    "DeviceSession",
    "TransferJob",
    "discover_devices",
    "flash_firmware",
    "transition",
    # Exceptions
    "RudelctlError",
    "BLEConnectionError",
    "BLETimeoutError",
    "AdapterUnavailableError",
    "ProtocolError",
    "InvalidResponseError",
    "InvalidTransitionError",
    "ProvisioningError",
    "TransferError",
    # Models
    "Payload",
    "DeviceInfo",
    "DeviceFilter",
    "TransferConfig",
    "Chunk",
    "Chunker",
    "TransferOutcome",
    "FleetSummary",
    "ResultAggregator",
    # Enums
    "FailureKind",
    "SessionEvent",
    "SessionState",
    # Constants
    "SERVICE_UUID",
    "CONTROL_CHAR_UUID",
    "DATA_CHAR_UUID",
]
