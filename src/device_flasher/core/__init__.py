"""
Core module for device flashing.

This module provides the single source of truth for:
- Device lifecycle: connect, flash, erase, monitor (device.py)
- Session state machine (orchestrator.py)
- Serial output monitoring (monitor.py)
- Event fan-out and transport ownership (events.py, ownership.py)
- Write gating / confirmation (safety.py)
- Offset and size parsing (parsing.py)
- Result objects (results.py)
- Synchronous CLI workflows (actions.py)
- Standardized warnings/messages (messages.py)
"""

from .events import EventHub, LogEvent, Severity, Subscription
from .ownership import TransportOwnership
from .monitor import SerialMonitor, LineDecoder, classify_line, default_log_filename
from .orchestrator import FlashOrchestrator, FlashSession, FlashStage, FlashUpdate, SessionStream
from .device import DeviceController, DeviceInfo
from .safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    create_cli_safety_context,
    allowlist_permission,
    load_allowlist,
    CONFIRMATION_TOKEN,
)
from .parsing import parse_offset, parse_size_bytes, format_size, normalize_mac
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    warning_for_error,
    result_to_warnings,
    TROUBLESHOOTING_TIPS,
)
from .actions import (
    read_device_info,
    flash_firmware,
    erase_flash,
    monitor_device,
)

__all__ = [
    # Events
    "EventHub",
    "LogEvent",
    "Severity",
    "Subscription",
    "TransportOwnership",
    # Monitor
    "SerialMonitor",
    "LineDecoder",
    "classify_line",
    "default_log_filename",
    # Orchestrator
    "FlashOrchestrator",
    "FlashSession",
    "FlashStage",
    "FlashUpdate",
    "SessionStream",
    # Device
    "DeviceController",
    "DeviceInfo",
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "create_cli_safety_context",
    "allowlist_permission",
    "load_allowlist",
    "CONFIRMATION_TOKEN",
    # Parsing
    "parse_offset",
    "parse_size_bytes",
    "format_size",
    "normalize_mac",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "warning_for_error",
    "result_to_warnings",
    "TROUBLESHOOTING_TIPS",
    # Actions
    "read_device_info",
    "flash_firmware",
    "erase_flash",
    "monitor_device",
]
