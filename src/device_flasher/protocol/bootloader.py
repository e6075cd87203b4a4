"""
Bootloader Protocol Driver

Command/response exchange with a device in programming mode, over any
DeviceHandle (serial or simulated).

Protocol flow:
    1. Reset into the bootloader (DTR/RTS sequence) and SYNC, with retries
    2. READ_ID / FLASH_SIZE to identify the chip
    3. ERASE the target region
    4. WRITE fixed-size chunks covering [0, N) in order
    5. VERIFY: device SHA-256 of the written range vs. the host digest
    6. RESET back to run mode
"""

import asyncio
import hashlib
import logging
import math
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..errors import (
    ConnectionError,
    EraseError,
    FlasherError,
    HandshakeTimeout,
    ProtocolError,
    VerificationError,
    WriteError,
)
from ..firmware import CHUNK_SIZE
from .packets import (
    CMD_ERASE,
    CMD_FLASH_SIZE,
    CMD_READ_ID,
    CMD_RESET,
    CMD_SYNC,
    CMD_VERIFY,
    CMD_WRITE,
    COMMAND_NAMES,
    STATUS_UNSUPPORTED,
    SYNC_PAYLOAD,
    Packet,
    PacketParser,
    pack_packet,
)
from .transport import DeviceHandle

logger = logging.getLogger(__name__)

RESET_HOLD = 0.1
BOOT_STRAP_HOLD = 0.05
ERASE_SECONDS_PER_MB = 10.0
MIN_ERASE_TIMEOUT = 3.0
WRITE_TIMEOUT = 3.0
VERIFY_TIMEOUT = 5.0
FLAG_VERIFY_SUPPORTED = 0x01


@dataclass(frozen=True)
class ChipIdentity:
    """Identity reported by READ_ID."""
    chip_type: str
    mac_address: str


def compute_progress(written: int, total: int) -> int:
    """floor(written / total * 100), clamped to [0, 100]."""
    if total <= 0:
        return 100
    return max(0, min(100, math.floor(written * 100 / total)))


def _format_mac(raw: bytes) -> str:
    return ":".join(f"{b:02X}" for b in raw)


class BootloaderDriver:
    """
    Bootloader protocol over a DeviceHandle.

    The driver keeps the state a session needs: the erased region, the
    write cursor, and a running SHA-256 of everything written. Callers must
    hold transport ownership for as long as they use a driver.

    Example:
        driver = BootloaderDriver(handle)
        await driver.enter_programming_mode()
        ident = await driver.query_identity()
        await driver.erase_region(0, len(image))
        for offset, chunk in image.chunks():
            await driver.write_chunk(offset, chunk)
        ok = await driver.verify()
        await driver.reset()
        await driver.release()
    """

    def __init__(
        self,
        handle: DeviceHandle,
        timeout: float = 0.5,
        retries: int = 5,
        chunk_size: int = CHUNK_SIZE,
    ):
        """
        Args:
            handle: Open device handle
            timeout: Per-attempt wait for handshake and identity responses
            retries: Programming-mode entry attempts
            chunk_size: Maximum bytes per WRITE
        """
        self.handle = handle
        self.timeout = timeout
        self.retries = retries
        self.chunk_size = chunk_size

        self.supports_verify = True
        self.flash_size: Optional[int] = None
        self._parser = PacketParser()
        self._stream: Optional[AsyncIterator[bytes]] = None
        self._pending: list = []
        self._erased: Optional[tuple] = None
        self._cursor: Optional[int] = None
        self._base: int = 0
        self._digest = hashlib.sha256()

    # ------------------------------------------------------------------
    # Exchange plumbing
    # ------------------------------------------------------------------

    async def _next_chunk(self, timeout: float) -> bytes:
        if self._stream is None:
            self._stream = self.handle.read()
        try:
            return await asyncio.wait_for(self._stream.__anext__(), timeout)
        except asyncio.TimeoutError:
            # wait_for cancelled the generator; start over next time
            self._stream = None
            raise
        except StopAsyncIteration:
            self._stream = None
            raise ConnectionError(f"Connection to {self.handle.name} closed")

    async def _wait_for(self, cmd: int, timeout: float) -> Packet:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            while self._pending:
                packet = self._pending.pop(0)
                if packet.cmd == cmd:
                    return packet
                logger.debug(f"Ignoring unexpected {packet.name} response")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            data = await self._next_chunk(remaining)
            self._pending.extend(self._parser.feed(data))

    async def _command(self, cmd: int, data: bytes = b"", timeout: Optional[float] = None) -> Packet:
        """
        Send one command and wait for its response.

        Raises:
            ProtocolError: No response within the timeout
        """
        name = COMMAND_NAMES.get(cmd, f"0x{cmd:02X}")
        await self.handle.write(pack_packet(cmd, 0, data))
        try:
            return await self._wait_for(cmd, timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError:
            raise ProtocolError(f"No response to {name} command")

    async def _discard_input(self) -> None:
        self._pending.clear()
        self._parser.clear()
        await self.handle.reset_input_buffer()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def reset_into_bootloader(self) -> None:
        """Classic DTR/RTS auto-reset: pulse EN with GPIO0 held low."""
        await self.handle.set_signals(dtr=False, rts=True)
        await asyncio.sleep(RESET_HOLD)
        await self.handle.set_signals(dtr=True, rts=False)
        await asyncio.sleep(BOOT_STRAP_HOLD)
        await self.handle.set_signals(dtr=False)

    async def enter_programming_mode(self) -> None:
        """
        Reset into the bootloader and synchronize.

        Retries the whole reset + SYNC sequence up to ``retries`` times.

        Raises:
            HandshakeTimeout: If no attempt is acknowledged
            ConnectionError: If the handle is closed
        """
        last_error = "no response"
        for attempt in range(1, self.retries + 1):
            logger.debug(f"Entering programming mode (attempt {attempt}/{self.retries})")
            await self.reset_into_bootloader()
            await self._discard_input()
            try:
                response = await self._command(CMD_SYNC, SYNC_PAYLOAD)
            except ProtocolError as e:
                last_error = str(e)
                continue
            if response.ok:
                logger.info(f"Bootloader synchronized on attempt {attempt}")
                return
            last_error = f"SYNC rejected: {response.status_text}"
            logger.debug(last_error)
        raise HandshakeTimeout(
            f"Device did not enter programming mode after {self.retries} attempts ({last_error})"
        )

    async def query_identity(self) -> ChipIdentity:
        """
        Read chip type and MAC address.

        Raises:
            ProtocolError: Missing, rejected, or malformed response
        """
        response = await self._command(CMD_READ_ID)
        if not response.ok:
            raise ProtocolError(f"READ_ID rejected: {response.status_text}")
        data = response.data
        if not data:
            raise ProtocolError("READ_ID response is empty")
        name_len = data[0]
        if len(data) != 1 + name_len + 6 + 1:
            raise ProtocolError(f"Malformed READ_ID response ({len(data)} bytes)")
        try:
            chip_type = data[1:1 + name_len].decode("ascii")
        except UnicodeDecodeError:
            raise ProtocolError("READ_ID chip name is not ASCII")
        if not chip_type:
            raise ProtocolError("READ_ID chip name is empty")
        mac = _format_mac(data[1 + name_len:1 + name_len + 6])
        self.supports_verify = bool(data[-1] & FLAG_VERIFY_SUPPORTED)
        logger.info(f"Chip: {chip_type}, MAC: {mac}")
        return ChipIdentity(chip_type=chip_type, mac_address=mac)

    async def detect_flash_size(self) -> int:
        """
        Raises:
            ProtocolError: Missing or malformed response
        """
        response = await self._command(CMD_FLASH_SIZE)
        if not response.ok:
            raise ProtocolError(f"FLASH_SIZE rejected: {response.status_text}")
        if len(response.data) != 4:
            raise ProtocolError(f"Malformed FLASH_SIZE response ({len(response.data)} bytes)")
        self.flash_size = int.from_bytes(response.data, "big")
        return self.flash_size

    async def erase_region(self, offset: int, length: int) -> None:
        """
        Erase [offset, offset + length) and arm the write cursor at offset.

        Erasing the same region again is harmless.

        Raises:
            EraseError: Rejected or unanswered erase
        """
        if offset < 0 or length <= 0:
            raise EraseError(f"Invalid erase region: offset={offset}, length={length}")
        timeout = max(MIN_ERASE_TIMEOUT, ERASE_SECONDS_PER_MB * length / (1024 * 1024))
        logger.debug(f"Erasing 0x{offset:08X}..0x{offset + length:08X}")
        payload = offset.to_bytes(4, "big") + length.to_bytes(4, "big")
        try:
            response = await self._command(CMD_ERASE, payload, timeout=timeout)
        except ProtocolError as e:
            raise EraseError(f"Erase failed at 0x{offset:08X}: {e}")
        if not response.ok:
            raise EraseError(f"Erase failed at 0x{offset:08X}: {response.status_text}")
        self._erased = (offset, offset + length)
        self._base = offset
        self._cursor = offset
        self._digest = hashlib.sha256()

    async def write_chunk(self, offset: int, data: bytes) -> int:
        """
        Write one chunk at offset.

        Chunks must continue exactly where the previous one ended.

        Returns:
            Bytes written

        Raises:
            WriteError: Gap, overlap, oversize chunk, or device rejection
        """
        if not data:
            raise WriteError(f"Empty chunk at offset 0x{offset:08X}", offset)
        if len(data) > self.chunk_size:
            raise WriteError(
                f"Chunk at offset 0x{offset:08X} is {len(data)} bytes, max {self.chunk_size}",
                offset,
            )
        if self._cursor is not None and offset != self._cursor:
            kind = "gap" if offset > self._cursor else "overlap"
            raise WriteError(
                f"Non-sequential write ({kind}): expected offset 0x{self._cursor:08X}, got 0x{offset:08X}",
                offset,
            )
        # Without a prior erase the device is left to reject the write
        payload = offset.to_bytes(4, "big") + bytes(data)
        try:
            response = await self._command(CMD_WRITE, payload, timeout=WRITE_TIMEOUT)
        except ProtocolError as e:
            raise WriteError(f"Write failed at offset 0x{offset:08X}: {e}", offset)
        if not response.ok:
            raise WriteError(f"Write failed at offset 0x{offset:08X}: {response.status_text}", offset)
        written = int.from_bytes(response.data, "big") if len(response.data) == 4 else len(data)
        if written != len(data):
            raise WriteError(
                f"Short write at offset 0x{offset:08X}: {written}/{len(data)} bytes", offset
            )
        self._digest.update(data)
        self._cursor = offset + written
        return written

    @property
    def bytes_written(self) -> int:
        if self._cursor is None:
            return 0
        return self._cursor - self._base

    async def verify(self) -> bool:
        """
        Compare the device digest of the written range with the host digest.

        Returns:
            True if they match

        Raises:
            VerificationError: Nothing written, or the exchange failed
        """
        if self._cursor is None or self.bytes_written == 0:
            raise VerificationError("Nothing has been written to verify")
        payload = self._base.to_bytes(4, "big") + self.bytes_written.to_bytes(4, "big")
        try:
            response = await self._command(CMD_VERIFY, payload, timeout=VERIFY_TIMEOUT)
        except ProtocolError as e:
            raise VerificationError(f"Verification failed: {e}")
        if response.arg == STATUS_UNSUPPORTED:
            self.supports_verify = False
            raise VerificationError("Device does not support verification")
        if not response.ok:
            raise VerificationError(f"Verification failed: {response.status_text}")
        if len(response.data) != 32:
            raise VerificationError(f"Malformed digest ({len(response.data)} bytes)")
        expected = self._digest.digest()
        match = response.data == expected
        if match:
            logger.info(f"Verified {self.bytes_written:,} bytes (sha256 {expected.hex()[:16]}...)")
        else:
            logger.warning(
                f"Digest mismatch: device {response.data.hex()[:16]}..., host {expected.hex()[:16]}..."
            )
        return match

    async def reset(self) -> None:
        """Hard reset into run mode. Failures are logged, never raised."""
        try:
            await self.handle.write(pack_packet(CMD_RESET))
        except FlasherError as e:
            logger.warning(f"RESET command not delivered: {e}")
        try:
            await self.handle.set_signals(dtr=False, rts=True)
            await asyncio.sleep(RESET_HOLD)
            await self.handle.set_signals(rts=False)
        except FlasherError as e:
            logger.warning(f"Hard reset failed: {e}")
        self._erased = None
        self._cursor = None

    async def release(self) -> None:
        """Close the read iterator so another reader can take over."""
        stream, self._stream = self._stream, None
        self._pending.clear()
        self._parser.clear()
        if stream is not None:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
