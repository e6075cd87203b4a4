"""Tests for line decoding, classification, and the serial monitor."""

import asyncio
import time

import pytest

from device_flasher.core.events import EventHub, LogEvent, Severity
from device_flasher.core.monitor import (
    LineDecoder,
    SerialMonitor,
    classify_line,
    clean_line,
    default_log_filename,
    hexdump_lines,
)
from device_flasher.core.ownership import TransportOwnership


class TestClassifyLine:
    """Severity from line content."""

    def test_error_line(self):
        """A line containing ERROR is an error."""
        assert classify_line("ERROR: foo") == Severity.ERROR

    def test_normal_line(self):
        """Ordinary output is info."""
        assert classify_line("normal line") == Severity.INFO

    def test_warning_line(self):
        """A line containing WARN is a warning."""
        assert classify_line("WARNING: low heap") == Severity.WARNING

    def test_esp_idf_prefixes(self):
        """ESP-IDF E/W prefixes are recognised."""
        assert classify_line("E (1234) wifi: connect failed") == Severity.ERROR
        assert classify_line("W (1207) wifi: No saved AP credentials") == Severity.WARNING
        assert classify_line("I (29) boot: ESP-IDF v5.1.2") == Severity.INFO


class TestLineDecoder:
    """Incremental bytes to lines."""

    def test_split_lines(self):
        """Lines are split on newlines; the partial tail is kept."""
        decoder = LineDecoder()
        assert decoder.feed(b"ERROR: foo\nnormal ") == ["ERROR: foo"]
        assert decoder.feed(b"line\n") == ["normal line"]

    def test_multibyte_split_across_reads(self):
        """A character split between reads decodes as if read whole."""
        whole = "Temperature: 23.5°C\n".encode("utf-8")
        cut = whole.index("°".encode("utf-8")) + 1

        split = LineDecoder()
        lines = split.feed(whole[:cut]) + split.feed(whole[cut:])
        assert lines == LineDecoder().feed(whole) == ["Temperature: 23.5°C"]

    def test_every_split_point(self):
        """No chunk boundary corrupts the text."""
        text = "héllo wörld ✓ 23.5°C\n"
        data = text.encode("utf-8")
        for cut in range(1, len(data)):
            decoder = LineDecoder()
            assert decoder.feed(data[:cut]) + decoder.feed(data[cut:]) == [text.strip()]

    def test_crlf_and_ansi(self):
        """Carriage returns and colour codes are stripped."""
        decoder = LineDecoder()
        assert decoder.feed(b"\x1b[0;32mI (29) boot: ok\x1b[0m\r\n") == ["I (29) boot: ok"]

    def test_blank_lines_dropped(self):
        """Empty lines produce no output."""
        assert LineDecoder().feed(b"\r\n\n\r\n") == []

    def test_flush_returns_partial(self):
        """flush() hands back an unterminated trailing line."""
        decoder = LineDecoder()
        assert decoder.feed(b"no newline") == []
        assert decoder.flush() == ["no newline"]
        assert decoder.flush() == []

    def test_clean_line(self):
        """Control characters other than tab are removed."""
        assert clean_line("a\x00b\x07c\r") == "abc"


class TestExport:
    """Log history export."""

    def test_event_format(self):
        """Events render as [HH:MM:SS] text."""
        ts = time.mktime((2026, 1, 2, 13, 4, 5, 0, 0, -1))
        event = LogEvent(text="hello", timestamp=ts)
        assert event.format() == "[13:04:05] hello"

    def test_default_log_filename(self):
        """Log files are named by date."""
        ts = time.mktime((2026, 3, 9, 12, 0, 0, 0, 0, -1))
        assert default_log_filename(ts) == "esp32-logs-2026-03-09.txt"


class TestHexdump:
    """Raw mode rows."""

    def test_row_layout(self):
        """Offset, hex bytes, and printable text with dots for the rest."""
        rows = hexdump_lines(b"Hello\x00\xff", base=0x10)
        assert len(rows) == 1
        assert rows[0].startswith("00000010: 48 65 6c 6c 6f 00 ff ")
        assert rows[0].endswith("  |Hello..|")

    def test_rows_are_aligned(self):
        """Full and partial rows put the text column in the same place."""
        rows = hexdump_lines(bytes(range(65, 85)))
        assert [row[:8] for row in rows] == ["00000000", "00000010"]
        assert rows[0].index("|") == rows[1].index("|")
        assert rows[1].endswith("|QRST|")


class TestSerialMonitor:
    """The monitor against the simulated device."""

    async def test_boot_log_events(self, controller, sim_device):
        """Boot log lines arrive classified and intact."""
        sub = controller.subscribe()
        await controller.restart_monitor(delay=0)
        await controller.handle.set_signals(dtr=False, rts=True)
        await controller.handle.set_signals(rts=False)

        seen = []

        async def read_until_temperature():
            async for event in sub:
                if event.source == "monitor":
                    seen.append(event)
                    if "Temperature" in event.text:
                        return

        await asyncio.wait_for(read_until_temperature(), timeout=2)
        by_text = {event.text: event.severity for event in seen}
        assert by_text["W (1207) wifi: No saved AP credentials, starting provisioning"] == Severity.WARNING
        assert by_text["I (3767) sense360: Temperature: 23.5°C, Humidity: 45%"] == Severity.INFO
        assert f"I (357) sense360: MAC Address: {sim_device.mac_address}" in by_text

    async def test_stop_releases_ownership(self, sim_transport, config):
        """stop() cancels the read and frees the token at once."""
        handle = await sim_transport.open(config)
        ownership = TransportOwnership()
        monitor = SerialMonitor(handle, ownership, EventHub())
        monitor.start()
        await asyncio.sleep(0.01)
        assert ownership.owner == "monitor"
        await monitor.stop()
        assert not monitor.running
        assert not ownership.held
        await handle.close()

    async def test_start_on_closed_handle(self, sim_transport, config):
        """A closed handle is never monitored."""
        handle = await sim_transport.open(config)
        await handle.close()
        monitor = SerialMonitor(handle, TransportOwnership(), EventHub())
        monitor.start()
        assert not monitor.running

    async def test_history_is_bounded(self, sim_transport, config):
        """History keeps only the most recent lines."""
        handle = await sim_transport.open(config)
        monitor = SerialMonitor(handle, TransportOwnership(), EventHub(), history=3)
        for i in range(5):
            monitor._emit(f"line {i}")
        assert [e.text for e in monitor.history] == ["line 2", "line 3", "line 4"]
        assert monitor.export_text().splitlines()[0].endswith("line 2")
        monitor.clear()
        assert monitor.export_text() == ""
        await handle.close()

    async def test_raw_mode_offsets(self, sim_transport, config):
        """Raw rows carry a running byte offset across reads."""
        handle = await sim_transport.open(config)
        monitor = SerialMonitor(handle, TransportOwnership(), EventHub(), raw=True)
        monitor.start()
        await handle.set_signals(dtr=False, rts=True)
        await handle.set_signals(rts=False)
        await asyncio.sleep(0.2)
        await monitor.stop()
        rows = [event.text for event in monitor.history]
        assert rows
        assert rows[0].startswith("00000000: ")
        offsets = [int(row[:8], 16) for row in rows]
        assert offsets == sorted(offsets)
        assert all(event.severity == Severity.INFO for event in monitor.history)
        await handle.close()

    async def test_save_logs(self, controller, tmp_path):
        """save_logs writes the exported history into a directory."""
        controller.monitor._emit("ERROR: sensor missing")
        path = controller.save_logs(tmp_path)
        assert path.parent == tmp_path
        assert path.name.startswith("esp32-logs-")
        assert "ERROR: sensor missing" in path.read_text(encoding="utf-8")


@pytest.mark.parametrize("line", ["ERROR: foo", "E (99) app: fail"])
def test_error_lines_parametrized(line):
    assert classify_line(line) == Severity.ERROR
