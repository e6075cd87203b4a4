"""
Exception taxonomy for device flashing.

Every transport- or protocol-level failure is raised as one of these and
surfaces unchanged into the flash orchestrator, which ends the session in
the ERROR stage carrying ``str(exc)`` verbatim.
"""

from typing import Optional


class FlasherError(Exception):
    """Base exception for all device flasher errors."""


class ConnectionError(FlasherError):  # noqa: A001
    """No device selected, permission denied, port busy, or handle closed."""


class HandshakeTimeout(FlasherError):
    """Device never acknowledged the programming-mode handshake."""


class ProtocolError(FlasherError):
    """Malformed, unexpected, or missing response from the bootloader."""


class EraseError(FlasherError):
    """Flash erase was rejected or failed."""


class WriteError(FlasherError):
    """
    A chunk write was rejected or failed.

    Attributes:
        offset: Byte offset of the chunk that failed
    """

    def __init__(self, message: str, offset: int):
        self.offset = offset
        super().__init__(message)


class VerificationError(FlasherError):
    """Verification exchange failed (recoverable at caller discretion)."""


class SessionBusyError(FlasherError):
    """A flash or erase session is already active on this handle."""


class FlashPermissionError(FlasherError):
    """
    Raised when a flash is not permitted for the connected device.

    Attributes:
        reason: Human-readable explanation of why the flash was denied
        details: Additional context (chip, MAC, image size)
    """

    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)
