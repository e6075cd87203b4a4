"""
Transport Layer

Byte-stream connection to a device. Two variants implement the same
contract: SerialTransport (pyserial) and SimulatedTransport. The variant is
chosen once, by select_transport(), and never mixed within a session.

This module provides:
- DeviceHandle: an open connection (Closed -> Open -> Closed, never reopened)
- Transport: factory that opens handles
- SerialTransport / SerialHandle
- Capability probing and port listing
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    serial = None

from ..config import ConnectionConfig
from ..errors import ConnectionError

logger = logging.getLogger(__name__)


# USB-serial bridges commonly found on ESP32 development boards
KNOWN_USB_BRIDGES = {
    (0x10C4, 0xEA60): "CP210x",
    (0x1A86, 0x7523): "CH340",
    (0x1A86, 0x55D4): "CH9102",
    (0x0403, 0x6001): "FTDI FT232R",
    (0x0403, 0x6015): "FTDI FT231X",
    (0x303A, None): "Espressif USB-JTAG",
    (0x239A, None): "Adafruit",
    (0x2341, None): "Arduino",
}


def identify_usb_bridge(vid: Optional[int], pid: Optional[int]) -> Optional[str]:
    """Return the bridge name for a VID/PID pair, or None if unknown."""
    if vid is None:
        return None
    return KNOWN_USB_BRIDGES.get((vid, pid)) or KNOWN_USB_BRIDGES.get((vid, None))


class DeviceHandle(ABC):
    """
    Open connection to a device.

    A handle starts Open and ends Closed. Once closed it is never reopened;
    Transport.open() must be called again for a fresh handle.
    """

    def __init__(self, name: str):
        self.name = name
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def _require_open(self) -> None:
        if not self._open:
            raise ConnectionError(f"Connection to {self.name} is closed")

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Send raw bytes."""

    @abstractmethod
    def read(self) -> AsyncIterator[bytes]:
        """
        Lazily yield byte chunks as they arrive.

        Each call returns a fresh iterator. The iterator suspends until data
        arrives, stops when the handle closes, and can be cancelled at any
        await point.
        """

    @abstractmethod
    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None:
        """Drive the DTR/RTS control lines."""

    @abstractmethod
    async def reset_input_buffer(self) -> None:
        """Discard any bytes received but not yet read."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""


class Transport(ABC):
    """Opens DeviceHandles."""

    kind: str = "abstract"

    @abstractmethod
    async def open(self, config: ConnectionConfig) -> DeviceHandle:
        """
        Open a connection described by config.

        Raises:
            ConnectionError: No device selected, permission denied, or in use
        """


class SerialHandle(DeviceHandle):
    """pyserial-backed handle."""

    def __init__(self, ser, poll_interval: float = 0.01):
        super().__init__(ser.port)
        self.ser = ser
        self.poll_interval = poll_interval

    def _write_blocking(self, data: bytes) -> None:
        try:
            written = self.ser.write(data)
            self.ser.flush()
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Write error on {self.name}: {e}")
        if written is not None and written != len(data):
            raise ConnectionError(f"Incomplete write: sent {written}/{len(data)} bytes")

    async def write(self, data: bytes) -> None:
        self._require_open()
        logger.debug(f">>> {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
        await asyncio.to_thread(self._write_blocking, data)

    async def read(self) -> AsyncIterator[bytes]:
        self._require_open()
        while self._open:
            try:
                waiting = self.ser.in_waiting
                data = self.ser.read(waiting) if waiting else b""
            except (serial.SerialException, OSError) as e:
                if not self._open:
                    return
                raise ConnectionError(f"Read error on {self.name}: {e}")
            if data:
                logger.debug(f"<<< {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
                yield data
            else:
                await asyncio.sleep(self.poll_interval)

    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None:
        self._require_open()
        try:
            if dtr is not None:
                self.ser.dtr = dtr
            if rts is not None:
                self.ser.rts = rts
                # Windows only propagates DTR when RTS is set
                self.ser.dtr = self.ser.dtr
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Cannot set control lines on {self.name}: {e}")

    async def reset_input_buffer(self) -> None:
        self._require_open()
        try:
            self.ser.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise ConnectionError(f"Cannot reset input buffer on {self.name}: {e}")

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            self.ser.close()
        except (serial.SerialException, OSError) as e:
            logger.warning(f"Error closing {self.name}: {e}")
        logger.debug(f"Closed {self.name}")


class SerialTransport(Transport):
    """Real serial transport using pyserial."""

    kind = "serial"

    def _open_blocking(self, config: ConnectionConfig):
        # timeout=0: non-blocking reads, polling happens in SerialHandle.read()
        ser = serial.Serial(
            port=config.port,
            baudrate=config.baudrate,
            bytesize=8,
            parity="N",
            stopbits=1,
            timeout=0,
            write_timeout=max(config.timeout, 2.0),
            rtscts=False,
            dsrdtr=False,
        )
        ser.reset_input_buffer()
        ser.reset_output_buffer()
        return ser

    async def open(self, config: ConnectionConfig) -> DeviceHandle:
        if serial is None:
            raise ConnectionError("PySerial required: pip install pyserial")
        if not config.port:
            raise ConnectionError("No device selected: specify a serial port")
        try:
            ser = await asyncio.to_thread(self._open_blocking, config)
        except serial.SerialException as e:
            raise ConnectionError(_describe_open_failure(config.port, e)) from e
        except OSError as e:
            raise ConnectionError(_describe_open_failure(config.port, e)) from e
        logger.debug(f"Opened {config.port} at {config.baudrate} bps")
        return SerialHandle(ser, poll_interval=config.poll_interval)


def _describe_open_failure(port: str, exc: BaseException) -> str:
    text = str(exc)
    err = getattr(exc, "errno", None)
    lowered = text.lower()
    if err in (errno.EACCES, errno.EPERM) or "permission" in lowered or "access is denied" in lowered:
        return f"Permission denied opening {port}: {text}"
    if err == errno.EBUSY or "busy" in lowered or "in use" in lowered:
        return f"Port {port} is already in use: {text}"
    if err == errno.ENOENT or "no such file" in lowered or "could not open port" in lowered:
        return f"No device found at {port}: {text}"
    return f"Cannot open port {port}: {text}"


@dataclass(frozen=True)
class PortInfo:
    """A serial port as reported by the OS."""
    device: str
    description: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None
    serial_number: Optional[str] = None

    @property
    def bridge(self) -> Optional[str]:
        return identify_usb_bridge(self.vid, self.pid)

    @property
    def usb_id(self) -> str:
        if self.vid is None:
            return "-"
        pid = f"{self.pid:04X}" if self.pid is not None else "----"
        return f"{self.vid:04X}:{pid}"


def list_ports() -> List[PortInfo]:
    """List serial ports visible to the OS (empty if pyserial is missing)."""
    if serial is None:
        return []
    return [
        PortInfo(
            device=p.device,
            description=p.description or "",
            vid=p.vid,
            pid=p.pid,
            serial_number=p.serial_number,
        )
        for p in serial.tools.list_ports.comports()
    ]


@dataclass(frozen=True)
class TransportProbe:
    """Result of capability probing."""
    kind: str
    reason: str

    @property
    def simulated(self) -> bool:
        return self.kind == "simulated"


def probe_transport(config: ConnectionConfig) -> TransportProbe:
    """
    Decide which transport variant can serve config.

    The simulated transport is chosen when simulation is requested, pyserial
    is unavailable, no port was selected and none exist, or the selected
    port exists but cannot be accessed.
    """
    if config.simulate:
        return TransportProbe("simulated", "simulation requested")
    if serial is None:
        return TransportProbe("simulated", "pyserial is not installed")
    if not config.port:
        if not list_ports():
            return TransportProbe("simulated", "no serial ports available")
        return TransportProbe("serial", "no port selected")
    if os.path.exists(config.port) and not os.access(config.port, os.R_OK | os.W_OK):
        return TransportProbe("simulated", f"permission denied for {config.port}")
    return TransportProbe("serial", f"serial port {config.port}")


def select_transport(config: ConnectionConfig) -> Transport:
    """
    Pick the transport variant once, at startup.

    When the probe prefers simulation but the caller disabled fallback, the
    serial transport is returned so open() reports the real failure.
    """
    from .simulated import SimulatedTransport

    probe = probe_transport(config)
    if probe.simulated and (config.simulate or config.allow_simulation_fallback):
        if not config.simulate:
            logger.warning(f"Serial channel unavailable ({probe.reason}); using simulated device")
        return SimulatedTransport()
    logger.debug(f"Using serial transport ({probe.reason})")
    return SerialTransport()
