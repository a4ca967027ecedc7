"""Exceptions raised by rudelctl."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.enums import FailureKind


class RudelctlError(Exception):
    """Base exception for all rudelctl errors."""


class BLEConnectionError(RudelctlError):
    """Connection to the device failed or the link dropped."""


class BLETimeoutError(RudelctlError):
    """A BLE operation did not complete within its deadline."""


class AdapterUnavailableError(BLEConnectionError):
    """No usable Bluetooth adapter; nothing in the fleet can be reached."""


class ProtocolError(RudelctlError):
    """The device violated the object-transfer protocol."""


class InvalidResponseError(ProtocolError):
    """A control message could not be parsed."""


class InvalidTransitionError(RudelctlError):
    """A session state machine received an event its state does not accept."""


class ProvisioningError(RudelctlError):
    """Serial firmware flashing failed."""


class TransferError(RudelctlError):
    """Terminal failure of a single device transfer.

    Attributes:
        kind: Failure category used for retry policy and reporting
        reason: Human-readable detail
    """

    def __init__(self, kind: FailureKind, reason: str):
        super().__init__(f"{kind.label}: {reason}")
        self.kind = kind
        self.reason = reason
