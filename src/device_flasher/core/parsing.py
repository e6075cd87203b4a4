"""
Centralized parsing helpers for offsets, sizes, and MAC addresses.

The CLI and the workflows in actions.py import these rather than
re-implementing them.
"""

import re
from typing import Optional

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "KIB": 1024,
    "M": 1024 * 1024,
    "MB": 1024 * 1024,
    "MIB": 1024 * 1024,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")
_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}([:-]?)[0-9A-Fa-f]{2}(\1[0-9A-Fa-f]{2}){4}$")


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse offset value from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None for the default

    Returns:
        Parsed integer offset, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        # Hex with 0x/0X prefix
        if value.lower().startswith("0x"):
            result = int(value, 16)
        # Hex with h/H suffix
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid offset '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )
    if result < 0:
        raise ValueError(f"Offset must not be negative: '{value}'")
    return result


def parse_size_bytes(value: str) -> int:
    """
    Parse a byte size like "4MB", "512K", "4096" or "0x400000".

    Raises:
        ValueError: If the format or unit is not recognized.
    """
    text = value.strip()
    if text.lower().startswith("0x"):
        return parse_offset(text)
    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"Invalid size '{value}'. Use bytes (4096), hex (0x1000), or units (4MB).")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.upper())
    if multiplier is None:
        raise ValueError(f"Unknown size unit '{unit}' in '{value}'")
    return int(float(number) * multiplier)


def format_size(size: int) -> str:
    """Render a byte count as "4MB", "512KB", or "1,234 bytes"."""
    if size >= 1024 * 1024 and size % (1024 * 1024) == 0:
        return f"{size // (1024 * 1024)}MB"
    if size >= 1024 and size % 1024 == 0:
        return f"{size // 1024}KB"
    return f"{size:,} bytes"


def normalize_mac(value: str) -> str:
    """
    Normalize a MAC address to upper-case colon form.

    Raises:
        ValueError: If value is not a 6-byte MAC.
    """
    text = value.strip()
    if not _MAC_RE.match(text):
        raise ValueError(f"Invalid MAC address '{value}'")
    digits = re.sub(r"[:-]", "", text).upper()
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))
