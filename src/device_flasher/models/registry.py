"""
Chip registry for ESP32-family targets.

Provides a single source of truth for:
- Chip profiles (architecture, flash sizes, bootloader offset, baud rates)
- Identification (matching the chip name reported by the bootloader)

Usage:
    from device_flasher.models import list_chips, get_chip, detect_chip

    chips = list_chips()
    profile = get_chip("ESP32-S3")
    profile = detect_chip("esp32s3")
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

MB = 1024 * 1024


@dataclass(frozen=True)
class ChipProfile:
    """
    Static description of a chip family member.

    Attributes:
        name: Canonical name as reported by the bootloader (e.g. "ESP32-S3")
        architecture: CPU core
        flash_sizes: Flash sizes seen on common modules
        bootloader_offset: Where the second-stage bootloader lives
        default_baud: Baud rate for the initial handshake
        max_baud: Highest reliable baud rate over a USB-serial bridge
        usb_native: Chip has a built-in USB-Serial/JTAG controller
        notes: Free-form hints shown by list-chips
    """
    name: str
    architecture: str
    flash_sizes: tuple = (4 * MB,)
    bootloader_offset: int = 0x0
    default_baud: int = 115200
    max_baud: int = 921600
    usb_native: bool = False
    notes: tuple = ()

    @property
    def default_flash_size(self) -> int:
        return self.flash_sizes[0]

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "architecture": self.architecture,
            "flash_sizes": list(self.flash_sizes),
            "bootloader_offset": self.bootloader_offset,
            "default_baud": self.default_baud,
            "max_baud": self.max_baud,
            "usb_native": self.usb_native,
            "notes": list(self.notes),
        }


# ============================================================================
# CHIP REGISTRY - All known chips
# ============================================================================

_CHIP_REGISTRY: Dict[str, ChipProfile] = {}


def _register_chip(profile: ChipProfile) -> None:
    _CHIP_REGISTRY[profile.name] = profile


def _init_registry() -> None:
    _register_chip(ChipProfile(
        name="ESP32",
        architecture="Xtensa LX6 (dual core)",
        flash_sizes=(4 * MB, 8 * MB, 16 * MB),
        bootloader_offset=0x1000,
        notes=("Needs a USB-serial bridge (CP210x, CH340) for flashing",),
    ))
    _register_chip(ChipProfile(
        name="ESP32-S2",
        architecture="Xtensa LX7 (single core)",
        flash_sizes=(4 * MB, 2 * MB),
        bootloader_offset=0x1000,
        usb_native=True,
        notes=("Native USB-OTG; hold BOOT while plugging in if no bridge is fitted",),
    ))
    _register_chip(ChipProfile(
        name="ESP32-S3",
        architecture="Xtensa LX7 (dual core)",
        flash_sizes=(4 * MB, 8 * MB, 16 * MB),
        usb_native=True,
        notes=("Native USB-Serial/JTAG shows up as 303A:1001",),
    ))
    _register_chip(ChipProfile(
        name="ESP32-C3",
        architecture="RISC-V (single core)",
        flash_sizes=(4 * MB,),
        usb_native=True,
    ))
    _register_chip(ChipProfile(
        name="ESP32-C6",
        architecture="RISC-V (single core)",
        flash_sizes=(4 * MB, 8 * MB),
        usb_native=True,
    ))
    _register_chip(ChipProfile(
        name="ESP32-H2",
        architecture="RISC-V (single core)",
        flash_sizes=(4 * MB,),
        usb_native=True,
        notes=("No Wi-Fi; 802.15.4 and BLE only",),
    ))


_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def list_chips() -> List[str]:
    """Sorted list of registered chip names."""
    return sorted(_CHIP_REGISTRY.keys())


def get_chip(name: str) -> Optional[ChipProfile]:
    """
    Get the profile for a chip.

    Args:
        name: Canonical chip name (case-sensitive)

    Returns:
        ChipProfile or None if not found.
    """
    return _CHIP_REGISTRY.get(name)


def _normalize(name: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", name.upper())


def detect_chip(reported: Optional[str]) -> Optional[ChipProfile]:
    """
    Match a bootloader-reported chip name against the registry.

    Matching ignores case and punctuation, so "esp32s3", "ESP32-S3" and
    "ESP32-S3 (QFN56)" all resolve to ESP32-S3.
    """
    if not reported:
        return None
    key = _normalize(reported.split("(", 1)[0])
    for profile in _CHIP_REGISTRY.values():
        if _normalize(profile.name) == key:
            return profile
    return None
