"""
Simulated Transport

A deterministic stand-in for an ESP32 board behind a USB-serial bridge. It
honours the same DeviceHandle contract as the serial transport and speaks
the framed bootloader protocol from packets.py.

Control lines follow the usual auto-reset circuit: RTS drives EN (True holds
the chip in reset) and DTR drives GPIO0 (True selects download mode when
reset is released).
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Tuple

from ..config import ConnectionConfig
from ..errors import ConnectionError
from .packets import (
    CMD_ERASE,
    CMD_FLASH_SIZE,
    CMD_READ_ID,
    CMD_RESET,
    CMD_SYNC,
    CMD_VERIFY,
    CMD_WRITE,
    STATUS_ACK,
    STATUS_ADDRESS,
    STATUS_BAD_STATE,
    STATUS_COMMAND,
    STATUS_DATA_CHECK,
    STATUS_FLASH_WRITE,
    STATUS_UNSUPPORTED,
    SYNC_PAYLOAD,
    Packet,
    PacketParser,
    pack_packet,
)
from .transport import DeviceHandle, Transport

logger = logging.getLogger(__name__)

DEFAULT_CHIP = "ESP32-S3"
DEFAULT_MAC = "94:B9:7E:12:34:56"
DEFAULT_FLASH_SIZE = 4 * 1024 * 1024

FLAG_VERIFY_SUPPORTED = 0x01

DOWNLOAD_BANNER = (
    "rst:0x1 (POWERON_RESET),boot:0x3 (DOWNLOAD_BOOT(UART0/UART1/SDIO_REI_REO_V2))",
    "waiting for download",
)

BOOT_LOG = (
    "rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)",
    "configsip: 0, SPIWP:0xee",
    "mode:DIO, clock div:1",
    "load:0x3fff0030,len:1184",
    "entry 0x400805e4",
    "I (29) boot: ESP-IDF v5.1.2 2nd stage bootloader",
    "I (42) boot.esp32: SPI Flash Size : 4MB",
    "I (223) boot: Loaded app from partition at offset 0x0",
    "I (243) cpu_start: Project name:     sense360-v2",
    "I (248) cpu_start: App version:      v2.0.0",
    "I (347) sense360: Starting Sense360 v2.0.0",
    "I (357) sense360: MAC Address: {mac}",
    "I (377) sense360: Hardware initialization complete",
    "I (497) sense360: WiFi initialized",
    "W (1207) wifi: No saved AP credentials, starting provisioning",
    "I (3757) sense360: Ready for operation",
    "I (3767) sense360: Temperature: 23.5°C, Humidity: 45%",
)


class DeviceMode(Enum):
    RUN = "run"
    RESET = "reset"
    BOOTLOADER = "bootloader"
    SYNCED = "synced"


@dataclass(frozen=True)
class SimulationTiming:
    """Per-operation delays in seconds."""
    sync: float = 0.01
    erase: float = 0.05
    write: float = 0.005
    verify: float = 0.02
    boot_line: float = 0.05

    @classmethod
    def instant(cls) -> "SimulationTiming":
        return cls(sync=0.0, erase=0.0, write=0.0, verify=0.0, boot_line=0.0)


def _mac_bytes(mac: str) -> bytes:
    return bytes(int(part, 16) for part in mac.split(":"))


class SimulatedDevice:
    """
    Simulated ESP32 board.

    Fault injection knobs (for tests):
        drop_sync_acks: Number of SYNC requests to ignore before answering
        fail_erase: Reject every ERASE with a flash write error
        fail_write_at: Reject the WRITE starting at this offset
        corrupt_verify: Return a wrong digest from VERIFY
        verify_supported: Advertise and answer VERIFY
    """

    def __init__(
        self,
        chip_type: str = DEFAULT_CHIP,
        mac_address: str = DEFAULT_MAC,
        flash_size: int = DEFAULT_FLASH_SIZE,
        timing: Optional[SimulationTiming] = None,
        boot_log: Tuple[str, ...] = BOOT_LOG,
    ):
        self.chip_type = chip_type
        self.mac_address = mac_address
        self.flash_size = flash_size
        self.timing = timing or SimulationTiming()
        self.boot_log = boot_log

        self.flash = bytearray(b"\xff" * flash_size)
        self.mode = DeviceMode.RUN
        self.attached = False
        self.dtr = False
        self.rts = False

        self.drop_sync_acks = 0
        self.fail_erase = False
        self.fail_write_at: Optional[int] = None
        self.corrupt_verify = False
        self.verify_supported = True

        self.write_calls = 0
        self.writes: List[Tuple[int, int]] = []
        self.erases: List[Tuple[int, int]] = []
        self.commands: List[int] = []
        self.resets = 0

        self._erased: List[Tuple[int, int]] = []
        self._parser = PacketParser()
        self._rx = bytearray()
        self._rx_event = asyncio.Event()
        self._boot_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Host-facing side
    # ------------------------------------------------------------------

    def attach(self) -> None:
        if self.attached:
            raise ConnectionError("Simulated device is already in use")
        self.attached = True
        # Fresh event: each connection may run on a different event loop
        self._rx_event = asyncio.Event()
        self._rx.clear()
        self._parser.clear()

    def detach(self) -> None:
        self.attached = False
        self._cancel_boot_log()
        self._rx_event.set()

    async def read_output(self) -> bytes:
        """Wait for device output; returns b"" once detached."""
        while not self._rx:
            if not self.attached:
                return b""
            self._rx_event.clear()
            await self._rx_event.wait()
        data = bytes(self._rx)
        self._rx.clear()
        return data

    def clear_output(self) -> None:
        self._rx.clear()

    async def set_signals(self, dtr: Optional[bool], rts: Optional[bool]) -> None:
        if dtr is not None:
            self.dtr = dtr
        if rts is None:
            return
        was_held = self.rts
        self.rts = rts
        if rts and not was_held:
            self._enter_reset()
        elif was_held and not rts:
            self._release_reset()

    async def receive(self, data: bytes) -> None:
        """Host -> device bytes."""
        if self.mode not in (DeviceMode.BOOTLOADER, DeviceMode.SYNCED):
            # Application firmware ignores stray input
            return
        for packet in self._parser.feed(data):
            await self._handle(packet)

    # ------------------------------------------------------------------
    # Device state machine
    # ------------------------------------------------------------------

    def _emit(self, data: bytes) -> None:
        if not self.attached:
            return
        self._rx.extend(data)
        self._rx_event.set()

    def _emit_lines(self, lines) -> None:
        for line in lines:
            self._emit(line.encode("utf-8") + b"\r\n")

    def _respond(self, cmd: int, status: int, data: bytes = b"") -> None:
        self._emit(pack_packet(cmd, status, data))

    def _enter_reset(self) -> None:
        self._cancel_boot_log()
        self.mode = DeviceMode.RESET
        self._erased.clear()
        self._parser.clear()
        self.resets += 1

    def _release_reset(self) -> None:
        if self.dtr:
            self.mode = DeviceMode.BOOTLOADER
            self._emit_lines(DOWNLOAD_BANNER)
            logger.debug("Simulated device entered download mode")
        else:
            self._boot()

    def _boot(self) -> None:
        self.mode = DeviceMode.RUN
        self._erased.clear()
        self._cancel_boot_log()
        self._boot_task = asyncio.get_running_loop().create_task(self._play_boot_log())
        logger.debug("Simulated device booting application")

    async def _play_boot_log(self) -> None:
        for line in self.boot_log:
            await asyncio.sleep(self.timing.boot_line)
            self._emit_lines([line.format(mac=self.mac_address)])

    def _cancel_boot_log(self) -> None:
        if self._boot_task is not None and not self._boot_task.done():
            self._boot_task.cancel()
        self._boot_task = None

    def _is_erased(self, start: int, end: int) -> bool:
        cursor = start
        for lo, hi in sorted(self._erased):
            if lo > cursor:
                break
            cursor = max(cursor, hi)
            if cursor >= end:
                return True
        return cursor >= end

    async def _handle(self, packet: Packet) -> None:
        cmd = packet.cmd
        self.commands.append(cmd)

        if cmd == CMD_SYNC:
            if self.drop_sync_acks > 0:
                self.drop_sync_acks -= 1
                return
            await asyncio.sleep(self.timing.sync)
            if packet.data != SYNC_PAYLOAD:
                self._respond(cmd, STATUS_COMMAND)
                return
            self.mode = DeviceMode.SYNCED
            self._respond(cmd, STATUS_ACK)
            return

        if cmd == CMD_RESET:
            self._boot()
            return

        if self.mode != DeviceMode.SYNCED:
            self._respond(cmd, STATUS_BAD_STATE)
            return

        if cmd == CMD_READ_ID:
            name = self.chip_type.encode("ascii")
            flags = FLAG_VERIFY_SUPPORTED if self.verify_supported else 0
            payload = bytes([len(name)]) + name + _mac_bytes(self.mac_address) + bytes([flags])
            self._respond(cmd, STATUS_ACK, payload)
        elif cmd == CMD_FLASH_SIZE:
            self._respond(cmd, STATUS_ACK, self.flash_size.to_bytes(4, "big"))
        elif cmd == CMD_ERASE:
            await self._handle_erase(packet)
        elif cmd == CMD_WRITE:
            await self._handle_write(packet)
        elif cmd == CMD_VERIFY:
            await self._handle_verify(packet)
        else:
            self._respond(cmd, STATUS_COMMAND)

    async def _handle_erase(self, packet: Packet) -> None:
        if len(packet.data) != 8:
            self._respond(packet.cmd, STATUS_DATA_CHECK)
            return
        offset = int.from_bytes(packet.data[:4], "big")
        length = int.from_bytes(packet.data[4:], "big")
        await asyncio.sleep(self.timing.erase)
        if offset + length > self.flash_size:
            self._respond(packet.cmd, STATUS_ADDRESS)
            return
        if self.fail_erase:
            self._respond(packet.cmd, STATUS_FLASH_WRITE)
            return
        self.flash[offset:offset + length] = b"\xff" * length
        self._erased.append((offset, offset + length))
        self.erases.append((offset, length))
        self._respond(packet.cmd, STATUS_ACK)

    async def _handle_write(self, packet: Packet) -> None:
        if len(packet.data) < 5:
            self._respond(packet.cmd, STATUS_DATA_CHECK)
            return
        offset = int.from_bytes(packet.data[:4], "big")
        chunk = packet.data[4:]
        end = offset + len(chunk)
        await asyncio.sleep(self.timing.write)
        if end > self.flash_size:
            self._respond(packet.cmd, STATUS_ADDRESS)
            return
        if not self._is_erased(offset, end):
            self._respond(packet.cmd, STATUS_BAD_STATE)
            return
        if self.fail_write_at is not None and offset == self.fail_write_at:
            self._respond(packet.cmd, STATUS_FLASH_WRITE)
            return
        self.flash[offset:end] = chunk
        self.write_calls += 1
        self.writes.append((offset, len(chunk)))
        self._respond(packet.cmd, STATUS_ACK, len(chunk).to_bytes(4, "big"))

    async def _handle_verify(self, packet: Packet) -> None:
        if not self.verify_supported:
            self._respond(packet.cmd, STATUS_UNSUPPORTED)
            return
        if len(packet.data) != 8:
            self._respond(packet.cmd, STATUS_DATA_CHECK)
            return
        offset = int.from_bytes(packet.data[:4], "big")
        length = int.from_bytes(packet.data[4:], "big")
        await asyncio.sleep(self.timing.verify)
        if offset + length > self.flash_size:
            self._respond(packet.cmd, STATUS_ADDRESS)
            return
        digest = bytearray(hashlib.sha256(bytes(self.flash[offset:offset + length])).digest())
        if self.corrupt_verify:
            digest[0] ^= 0xFF
        self._respond(packet.cmd, STATUS_ACK, bytes(digest))


class SimulatedHandle(DeviceHandle):
    """DeviceHandle wired to a SimulatedDevice."""

    def __init__(self, device: SimulatedDevice, name: str):
        super().__init__(name)
        self.device = device

    async def write(self, data: bytes) -> None:
        self._require_open()
        logger.debug(f">>> {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
        await self.device.receive(data)

    async def read(self) -> AsyncIterator[bytes]:
        self._require_open()
        while self._open:
            data = await self.device.read_output()
            if not data:
                return
            logger.debug(f"<<< {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
            yield data

    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None:
        self._require_open()
        await self.device.set_signals(dtr, rts)

    async def reset_input_buffer(self) -> None:
        self._require_open()
        self.device.clear_output()

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self.device.detach()
        logger.debug(f"Closed {self.name}")


class SimulatedTransport(Transport):
    """Transport that opens handles onto one SimulatedDevice."""

    kind = "simulated"

    def __init__(self, device: Optional[SimulatedDevice] = None):
        self.device = device or SimulatedDevice()

    async def open(self, config: ConnectionConfig) -> DeviceHandle:
        self.device.attach()
        name = f"sim://{config.port or self.device.chip_type.lower()}"
        logger.debug(f"Opened {name}")
        return SimulatedHandle(self.device, name)
