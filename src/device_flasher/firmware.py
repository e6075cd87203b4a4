"""
Firmware image container.

A FirmwareImage is loaded once before a flash session and never mutated.
Fetching and parsing the remote firmware catalog happens upstream; this
module only wraps the already-downloaded bytes.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Tuple

from .errors import FlasherError

CHUNK_SIZE = 4096


class FirmwareImageError(FlasherError):
    """Raised when a firmware image cannot be loaded or is unusable."""


@dataclass(frozen=True)
class FirmwareImage:
    """Immutable firmware byte buffer."""

    data: bytes
    name: str = "firmware.bin"
    sha256: str = field(init=False)

    def __post_init__(self) -> None:
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise FirmwareImageError(f"Firmware data must be bytes, got {type(self.data).__name__}")
        data = bytes(self.data)
        if not data:
            raise FirmwareImageError("Firmware image is empty")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "sha256", hashlib.sha256(data).hexdigest())

    def __len__(self) -> int:
        return len(self.data)

    @property
    def length(self) -> int:
        return len(self.data)

    def chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[Tuple[int, bytes]]:
        """Yield (offset, chunk) pairs covering [0, length) with no gaps or overlaps."""
        if chunk_size <= 0:
            raise FirmwareImageError("chunk_size must be > 0")
        for offset in range(0, len(self.data), chunk_size):
            yield offset, self.data[offset:offset + chunk_size]

    def chunk_count(self, chunk_size: int = CHUNK_SIZE) -> int:
        return (len(self.data) + chunk_size - 1) // chunk_size

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "firmware.bin") -> "FirmwareImage":
        return cls(data=data, name=name)

    @classmethod
    def from_file(cls, path: str | Path, max_size: int | None = None) -> "FirmwareImage":
        """
        Load a firmware image from disk.

        Args:
            path: Path to the .bin file
            max_size: Optional upper bound (typically the device flash size)

        Raises:
            FirmwareImageError: If the file is missing, empty, or too large
        """
        p = Path(path)
        if not p.is_file():
            raise FirmwareImageError(f"Firmware file not found: {p}")
        data = p.read_bytes()
        if max_size is not None and len(data) > max_size:
            raise FirmwareImageError(
                f"Firmware is {len(data):,} bytes, exceeds flash size of {max_size:,} bytes"
            )
        return cls(data=data, name=p.name)
