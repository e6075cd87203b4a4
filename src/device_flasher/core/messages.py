"""
Standardized warning and message system.

Structured warning items with stable codes and remediation hints, so the
CLI can show the same guidance for the same failure every time.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any

from ..errors import (
    ConnectionError,
    EraseError,
    FlashPermissionError,
    HandshakeTimeout,
    ProtocolError,
    SessionBusyError,
    VerificationError,
    WriteError,
)
from .results import OperationResult


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Connection
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_PORT_PERMISSION = "W_PORT_PERMISSION"
    W_PORT_BUSY = "W_PORT_BUSY"
    W_HANDSHAKE_FAILED = "W_HANDSHAKE_FAILED"
    W_PROTOCOL_ERROR = "W_PROTOCOL_ERROR"

    # Flash operations
    W_ERASE_FAILED = "W_ERASE_FAILED"
    W_WRITE_FAILED = "W_WRITE_FAILED"
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_VERIFY_UNSUPPORTED = "W_VERIFY_UNSUPPORTED"
    W_SESSION_BUSY = "W_SESSION_BUSY"
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"

    # Safety
    W_WRITE_DISABLED = "W_WRITE_DISABLED"
    W_CONFIRMATION_REQUIRED = "W_CONFIRMATION_REQUIRED"
    W_NOT_PERMITTED = "W_NOT_PERMITTED"

    # Operation
    W_SIMULATED = "W_SIMULATED"
    W_CHIP_UNKNOWN = "W_CHIP_UNKNOWN"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Use a data cable, not a charge-only cable. Run 'ports' to list available ports.",
    WarningCode.W_PORT_PERMISSION:
        "Add your user to the dialout (Linux) or uucp group, or install the CP2102/CH340 driver.",
    WarningCode.W_PORT_BUSY:
        "Close other serial apps (Arduino IDE, PuTTY, screen) that may hold the port.",
    WarningCode.W_HANDSHAKE_FAILED:
        "Hold the BOOT button while connecting, then release it. Try another USB port.",
    WarningCode.W_PROTOCOL_ERROR:
        "Lower the baud rate and check the cable. Power cycle the device.",
    WarningCode.W_ERASE_FAILED:
        "Erase the flash first with the 'erase' command, then retry.",
    WarningCode.W_WRITE_FAILED:
        "Keep the USB connection stable during flashing. Try a lower baud rate.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash contents do not match the image. Erase first and flash again.",
    WarningCode.W_VERIFY_UNSUPPORTED:
        "The device cannot verify; success means every byte was written without error.",
    WarningCode.W_SESSION_BUSY:
        "Wait for the current flash or erase to finish.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "Check the firmware matches the chip; use 'info' to read the flash size.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write flag to perform actual writes.",
    WarningCode.W_CONFIRMATION_REQUIRED:
        "Type 'WRITE' to confirm the operation, or pass --confirm WRITE.",
    WarningCode.W_NOT_PERMITTED:
        "This device is not in the allowlist. Check the --allow file.",
    WarningCode.W_SIMULATED:
        "No real device was flashed. Remove --simulate and select a port.",
    WarningCode.W_CHIP_UNKNOWN:
        "Chip is not in the registry. Run 'list-chips' for supported chips.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details (--verbose).",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "", remediation: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail, remediation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def code_for_error(exc: BaseException) -> WarningCode:
    """Map an exception to its warning code."""
    from ..firmware import FirmwareImageError
    from .safety import WritePermissionError

    if isinstance(exc, HandshakeTimeout):
        return WarningCode.W_HANDSHAKE_FAILED
    if isinstance(exc, ConnectionError):
        return code_for_message(str(exc))
    if isinstance(exc, ProtocolError):
        return WarningCode.W_PROTOCOL_ERROR
    if isinstance(exc, EraseError):
        return WarningCode.W_ERASE_FAILED
    if isinstance(exc, WriteError):
        return WarningCode.W_WRITE_FAILED
    if isinstance(exc, VerificationError):
        if "not support" in str(exc).lower():
            return WarningCode.W_VERIFY_UNSUPPORTED
        return WarningCode.W_VERIFY_MISMATCH
    if isinstance(exc, SessionBusyError):
        return WarningCode.W_SESSION_BUSY
    if isinstance(exc, FlashPermissionError):
        return WarningCode.W_NOT_PERMITTED
    if isinstance(exc, FirmwareImageError) and "exceeds" in str(exc):
        return WarningCode.W_IMAGE_TOO_LARGE
    if isinstance(exc, WritePermissionError):
        if "token" in str(exc).lower():
            return WarningCode.W_CONFIRMATION_REQUIRED
        return WarningCode.W_WRITE_DISABLED
    return WarningCode.W_UNKNOWN


def code_for_message(message: str) -> WarningCode:
    """Best-effort mapping of a plain message to a warning code."""
    msg = message.lower()
    if "permission denied" in msg or "access is denied" in msg:
        return WarningCode.W_PORT_PERMISSION
    if "in use" in msg or "busy" in msg:
        return WarningCode.W_PORT_BUSY
    if "programming mode" in msg or "handshake" in msg:
        return WarningCode.W_HANDSHAKE_FAILED
    if "no device" in msg or "not found" in msg or "no such file" in msg:
        return WarningCode.W_DEVICE_NOT_FOUND
    if "erase failed" in msg:
        return WarningCode.W_ERASE_FAILED
    if "write failed" in msg or "non-sequential" in msg:
        return WarningCode.W_WRITE_FAILED
    if "verification" in msg or "mismatch" in msg:
        if "not support" in msg:
            return WarningCode.W_VERIFY_UNSUPPORTED
        return WarningCode.W_VERIFY_MISMATCH
    if "simulat" in msg:
        return WarningCode.W_SIMULATED
    if "exceeds flash size" in msg:
        return WarningCode.W_IMAGE_TOO_LARGE
    if "not permitted" in msg or "allowlist" in msg:
        return WarningCode.W_NOT_PERMITTED
    if "no response" in msg or "malformed" in msg:
        return WarningCode.W_PROTOCOL_ERROR
    return WarningCode.W_UNKNOWN


def warning_for_error(exc: BaseException) -> WarningItem:
    """ERROR-level item for an exception that ended a command."""
    return WarningItem.error(code_for_error(exc), str(exc))


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain warning strings to WarningItem list.

    Known patterns get their specific code; everything else is W_UNKNOWN.
    """
    return [
        WarningItem(level=default_level, code=code_for_message(msg), title=msg)
        for msg in warning_strings
    ]


def result_to_warnings(result: OperationResult) -> List[WarningItem]:
    """Convert an OperationResult's warnings and errors to WarningItems."""
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items


# Checklist shown by `diagnose` when a device cannot be reached
TROUBLESHOOTING_TIPS = [
    ("Cable", "Use a USB data cable; many cables are charge-only."),
    ("Boot mode", "Hold the BOOT button, tap RESET (EN), then release BOOT."),
    ("Drivers", "Install the CP2102 (Silicon Labs) or CH340/CH9102 (WCH) USB driver."),
    ("USB port", "Try another USB port, preferably directly on the computer, not a hub."),
    ("Other apps", "Close serial monitors (Arduino IDE, PuTTY, screen) that may hold the port."),
    ("Erase first", "If flashing fails repeatedly, run 'erase' and flash again."),
    ("Speed", "Lower the baud rate with --baud 115200."),
    ("Stability", "Keep the USB connection stable; do not unplug during flashing."),
]
