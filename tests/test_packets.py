import pytest

from device_flasher.errors import ProtocolError
from device_flasher.protocol.packets import (
    CMD_SYNC,
    CMD_WRITE,
    STATUS_ACK,
    STATUS_BAD_STATE,
    PacketParser,
    crc16_ccitt,
    pack_packet,
    unpack_packet,
)


def test_crc16_ccitt_xmodem_vector_123456789():
    # CRC16-CCITT (poly 0x1021, init 0) commonly known as "XMODEM" variant.
    assert crc16_ccitt(b"123456789") == 0x31C3


def test_crc16_range_out_of_bounds():
    with pytest.raises(ValueError):
        crc16_ccitt(b"abc", offset=2, count=5)


def test_packet_framing():
    pkt = pack_packet(CMD_SYNC, 0, b"BOOTLOADER")
    assert pkt[:1] == b"\xAA"
    assert pkt[-1:] == b"\xEF"
    assert int.from_bytes(pkt[3:5], "big") == len(b"BOOTLOADER")

    parsed = unpack_packet(pkt)
    assert parsed.cmd == CMD_SYNC
    assert parsed.arg == 0
    assert parsed.data == b"BOOTLOADER"


def test_unpack_rejects_bad_crc():
    pkt = bytearray(pack_packet(CMD_WRITE, 0, b"\x01\x02\x03"))
    pkt[6] ^= 0xFF
    with pytest.raises(ProtocolError, match="CRC16 mismatch"):
        unpack_packet(bytes(pkt))


def test_unpack_rejects_short_packet():
    with pytest.raises(ProtocolError):
        unpack_packet(b"\xAA\x01")


def test_pack_rejects_out_of_range_fields():
    with pytest.raises(ValueError):
        pack_packet(0x100)
    with pytest.raises(ValueError):
        pack_packet(CMD_SYNC, arg=-1)


def test_status_text():
    ok = unpack_packet(pack_packet(CMD_WRITE, STATUS_ACK))
    rejected = unpack_packet(pack_packet(CMD_WRITE, STATUS_BAD_STATE))
    assert ok.ok
    assert not rejected.ok
    assert rejected.name == "WRITE"
    assert rejected.status_text == "command out of order"
    assert unpack_packet(pack_packet(CMD_WRITE, 0x7F)).status_text == "status 0x7F"


class TestPacketParser:
    """Incremental extraction from a noisy byte stream."""

    def test_skips_text_before_packet(self):
        """Boot log text ahead of a packet is discarded."""
        parser = PacketParser()
        noise = b"waiting for download\r\n"
        packets = parser.feed(noise + pack_packet(CMD_SYNC, STATUS_ACK))
        assert len(packets) == 1
        assert packets[0].cmd == CMD_SYNC
        assert parser.discarded == len(noise)

    def test_packet_split_across_feeds(self):
        """A packet arriving in pieces is emitted once complete."""
        parser = PacketParser()
        pkt = pack_packet(CMD_WRITE, STATUS_ACK, b"\x00\x00\x10\x00")
        assert parser.feed(pkt[:4]) == []
        assert parser.feed(pkt[4:9]) == []
        packets = parser.feed(pkt[9:])
        assert [p.data for p in packets] == [b"\x00\x00\x10\x00"]

    def test_resyncs_after_corrupt_frame(self):
        """A corrupt frame is dropped and the following packet still parses."""
        parser = PacketParser()
        bad = bytearray(pack_packet(CMD_WRITE, 0, b"xyz"))
        bad[-2] ^= 0x55
        good = pack_packet(CMD_SYNC, STATUS_ACK)
        packets = parser.feed(bytes(bad) + good)
        assert [p.cmd for p in packets] == [CMD_SYNC]

    def test_multiple_packets_in_one_feed(self):
        """Back-to-back packets are all returned in order."""
        parser = PacketParser()
        blob = pack_packet(1, STATUS_ACK) + pack_packet(2, STATUS_ACK) + pack_packet(3, STATUS_ACK)
        assert [p.cmd for p in parser.feed(blob)] == [1, 2, 3]
