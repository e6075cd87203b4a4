"""
Connection and session configuration.
"""

from dataclasses import dataclass, replace
from typing import Optional

from .firmware import CHUNK_SIZE

DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 0.5
DEFAULT_HANDSHAKE_RETRIES = 5
DEFAULT_SETTLE_DELAY = 1.5


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Parameters for opening a device and running sessions on it.

    Attributes:
        port: Serial port path (e.g. "/dev/ttyUSB0", "COM3"); None means
              no device was selected
        baudrate: Serial baud rate
        timeout: Per-attempt wait for handshake/identity responses (seconds)
        handshake_retries: Attempts for entering programming mode
        chunk_size: Bytes per write_chunk call
        settle_delay: Wait after a session ends before the monitor resumes
        simulate: Force the simulated transport
        allow_simulation_fallback: Fall back to the simulated transport when
              the serial channel is unavailable
        poll_interval: Serial read poll period; bounds read cancellation latency
    """
    port: Optional[str] = None
    baudrate: int = DEFAULT_BAUDRATE
    timeout: float = DEFAULT_TIMEOUT
    handshake_retries: int = DEFAULT_HANDSHAKE_RETRIES
    chunk_size: int = CHUNK_SIZE
    settle_delay: float = DEFAULT_SETTLE_DELAY
    simulate: bool = False
    allow_simulation_fallback: bool = True
    poll_interval: float = 0.01

    def __post_init__(self) -> None:
        if self.baudrate <= 0:
            raise ValueError(f"baudrate must be > 0, got {self.baudrate}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.handshake_retries < 1:
            raise ValueError("handshake_retries must be >= 1")
        if self.chunk_size <= 0 or self.chunk_size > 0xFFFF - 4:
            raise ValueError(f"chunk_size out of range: {self.chunk_size}")
        if self.settle_delay < 0:
            raise ValueError("settle_delay must be >= 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

    def with_overrides(self, **changes) -> "ConnectionConfig":
        """Return a copy with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
