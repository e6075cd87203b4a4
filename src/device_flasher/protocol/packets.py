"""
Bootloader packet framing.

Layout:
  0xAA | cmd | arg | dataLen_be_u16 | data | crc16_be_u16 | 0xEF

CRC16-CCITT (poly 0x1021, init 0) is computed over
``[cmd, arg, dataLen_hi, dataLen_lo, data...]``. Responses echo the
command byte and carry a status code in ``arg``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..errors import ProtocolError

START_BYTE = 0xAA
END_BYTE = 0xEF
HEADER_LEN = 5  # start, cmd, arg, len_hi, len_lo
TRAILER_LEN = 3  # crc_hi, crc_lo, end
MAX_DATA_LEN = 0xFFFF

# Commands
CMD_SYNC = 0x01
CMD_READ_ID = 0x02
CMD_FLASH_SIZE = 0x03
CMD_ERASE = 0x04
CMD_WRITE = 0x05
CMD_VERIFY = 0x06
CMD_RESET = 0x07

SYNC_PAYLOAD = b"BOOTLOADER"

# Status codes carried in the response ``arg`` byte
STATUS_ACK = 0x06
STATUS_BAD_STATE = 0xE1
STATUS_DATA_CHECK = 0xE2
STATUS_ADDRESS = 0xE3
STATUS_FLASH_WRITE = 0xE4
STATUS_COMMAND = 0xE5
STATUS_UNSUPPORTED = 0xE6

STATUS_DESCRIPTIONS = {
    STATUS_ACK: "ok",
    STATUS_BAD_STATE: "command out of order",
    STATUS_DATA_CHECK: "data check error",
    STATUS_ADDRESS: "address error",
    STATUS_FLASH_WRITE: "flash write error",
    STATUS_COMMAND: "command error",
    STATUS_UNSUPPORTED: "unsupported command",
}

COMMAND_NAMES = {
    CMD_SYNC: "SYNC",
    CMD_READ_ID: "READ_ID",
    CMD_FLASH_SIZE: "FLASH_SIZE",
    CMD_ERASE: "ERASE",
    CMD_WRITE: "WRITE",
    CMD_VERIFY: "VERIFY",
    CMD_RESET: "RESET",
}


def crc16_ccitt(dat: bytes, offset: int = 0, count: Optional[int] = None, *, poly: int = 0x1021, init: int = 0) -> int:
    """CRC16-CCITT over ``dat[offset:offset+count]`` (XMODEM variant by default)."""
    if offset < 0:
        raise ValueError("offset must be >= 0")
    if count is None:
        count = len(dat) - offset
    if count < 0 or offset + count > len(dat):
        raise ValueError("crc range out of bounds")

    crc = init & 0xFFFF
    for b in dat[offset:offset + count]:
        crc ^= (b & 0xFF) << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ poly) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


@dataclass(frozen=True)
class Packet:
    """Single framed bootloader packet."""

    cmd: int
    arg: int
    data: bytes = b""

    @property
    def ok(self) -> bool:
        return self.arg == STATUS_ACK

    @property
    def status_text(self) -> str:
        return STATUS_DESCRIPTIONS.get(self.arg, f"status 0x{self.arg:02X}")

    @property
    def name(self) -> str:
        return COMMAND_NAMES.get(self.cmd, f"0x{self.cmd:02X}")


def pack_packet(cmd: int, arg: int = 0, data: bytes = b"") -> bytes:
    """Frame a packet for the wire."""
    if not (0 <= cmd <= 0xFF):
        raise ValueError("cmd must fit in uint8")
    if not (0 <= arg <= 0xFF):
        raise ValueError("arg must fit in uint8")
    if len(data) > MAX_DATA_LEN:
        raise ValueError("data too large for uint16 length")

    body = bytes([START_BYTE, cmd, arg]) + len(data).to_bytes(2, "big") + data
    crc = crc16_ccitt(body, offset=1, count=4 + len(data))
    return body + crc.to_bytes(2, "big") + bytes([END_BYTE])


def unpack_packet(blob: bytes) -> Packet:
    """Parse one complete packet, validating framing and CRC."""
    if len(blob) < HEADER_LEN + TRAILER_LEN:
        raise ProtocolError("packet too short")
    if blob[0] != START_BYTE:
        raise ProtocolError(f"missing 0x{START_BYTE:02X} start byte")
    if blob[-1] != END_BYTE:
        raise ProtocolError(f"missing 0x{END_BYTE:02X} end byte")
    data_len = int.from_bytes(blob[3:5], "big")
    expected = HEADER_LEN + data_len + TRAILER_LEN
    if len(blob) != expected:
        raise ProtocolError(f"packet length mismatch: got {len(blob)}, expected {expected}")
    data = blob[HEADER_LEN:HEADER_LEN + data_len]
    want_crc = int.from_bytes(blob[HEADER_LEN + data_len:HEADER_LEN + data_len + 2], "big")
    got_crc = crc16_ccitt(blob, offset=1, count=4 + data_len)
    if got_crc != want_crc:
        raise ProtocolError(f"CRC16 mismatch: got 0x{got_crc:04X}, want 0x{want_crc:04X}")
    return Packet(cmd=blob[1], arg=blob[2], data=bytes(data))


class PacketParser:
    """
    Incremental packet extractor for a byte stream.

    Bytes before a start byte are discarded as noise (boot log output,
    line noise after a reset).
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self.discarded = 0

    def feed(self, data: bytes) -> list[Packet]:
        self._buf.extend(data)
        packets: list[Packet] = []
        while True:
            start = self._buf.find(bytes([START_BYTE]))
            if start < 0:
                self.discarded += len(self._buf)
                self._buf.clear()
                break
            if start:
                self.discarded += start
                del self._buf[:start]
            if len(self._buf) < HEADER_LEN:
                break
            data_len = int.from_bytes(self._buf[3:5], "big")
            total = HEADER_LEN + data_len + TRAILER_LEN
            if len(self._buf) < total:
                break
            frame = bytes(self._buf[:total])
            try:
                packets.append(unpack_packet(frame))
            except ProtocolError:
                # Resync on the next candidate start byte
                self.discarded += 1
                del self._buf[:1]
                continue
            del self._buf[:total]
        return packets

    def clear(self) -> None:
        self._buf.clear()
