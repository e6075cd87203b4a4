"""
Device Flasher - firmware flashing and serial monitoring for ESP32-family boards

Erase, write, verify and reset over a USB-serial bridge, with a simulated
device for testing and for machines without hardware.
"""

__version__ = "0.1.0"

from device_flasher.config import ConnectionConfig
from device_flasher.firmware import FirmwareImage
from device_flasher.core.device import DeviceController, DeviceInfo
from device_flasher.core.orchestrator import FlashStage, FlashUpdate

__all__ = [
    "ConnectionConfig",
    "FirmwareImage",
    "DeviceController",
    "DeviceInfo",
    "FlashStage",
    "FlashUpdate",
    "__version__",
]
