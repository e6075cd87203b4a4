"""
Chip registry for ESP32-family targets.
"""

from .registry import (
    ChipProfile,
    list_chips,
    get_chip,
    detect_chip,
)

__all__ = [
    "ChipProfile",
    "list_chips",
    "get_chip",
    "detect_chip",
]
