"""
Serial Monitor

Reads device output while it owns the transport, decodes it as UTF-8 text,
splits it into lines, classifies each line, and publishes LogEvents. In raw
mode the undecoded bytes are published as hex dump rows instead.

The monitor is stopped before every flash session and restarted after it;
stop() cancels the in-flight read at once and releases ownership.
"""

import asyncio
import codecs
import logging
import re
import time
from collections import deque
from typing import Deque, List, Optional

from ..errors import ConnectionError
from ..protocol.transport import DeviceHandle
from .events import EventHub, LogEvent, Severity
from .ownership import TransportOwnership

logger = logging.getLogger(__name__)

OWNER = "monitor"
DEFAULT_HISTORY = 500
RESTART_DELAY = 1.0
RAW_WIDTH = 16

# ESP-IDF log prefixes: "E (123) tag: ...", "W (123) tag: ..."
_IDF_ERROR = re.compile(r"^E \(\d+\)")
_IDF_WARNING = re.compile(r"^W \(\d+\)")
_ANSI = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_CONTROL = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def classify_line(line: str) -> Severity:
    """
    Classify a device log line by content.

    "ERROR" or an ESP-IDF "E (" prefix is an error, "WARN" or "W (" is a
    warning, everything else is info.
    """
    if "ERROR" in line or _IDF_ERROR.match(line):
        return Severity.ERROR
    if "WARN" in line or _IDF_WARNING.match(line):
        return Severity.WARNING
    return Severity.INFO


def clean_line(line: str) -> str:
    """Strip ANSI colour codes, carriage returns, and control characters."""
    return _CONTROL.sub("", _ANSI.sub("", line)).rstrip()


class LineDecoder:
    """
    Incremental bytes -> lines decoder.

    Multi-byte UTF-8 sequences split across reads are carried over to the
    next feed(), as is any partial line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, data: bytes) -> List[str]:
        text = self._partial + self._decoder.decode(data)
        *lines, self._partial = text.split("\n")
        return [c for c in (clean_line(line) for line in lines) if c]

    def flush(self) -> List[str]:
        """Return the trailing partial line, if any."""
        text = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        line = clean_line(text)
        return [line] if line else []

    def reset(self) -> None:
        self._decoder.reset()
        self._partial = ""


def hexdump_lines(data: bytes, base: int = 0) -> List[str]:
    """Rows of ``00000010: 48 65 6c ...  |Hel|``, RAW_WIDTH bytes each."""
    lines = []
    for i in range(0, len(data), RAW_WIDTH):
        row = data[i:i + RAW_WIDTH]
        hex_str = " ".join(f"{b:02x}" for b in row)
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in row)
        lines.append(f"{base + i:08x}: {hex_str:<{RAW_WIDTH * 3 - 1}}  |{text}|")
    return lines


def default_log_filename(when: Optional[float] = None) -> str:
    """esp32-logs-YYYY-MM-DD.txt for the given time (default: now)."""
    return f"esp32-logs-{time.strftime('%Y-%m-%d', time.localtime(when))}.txt"


class SerialMonitor:
    """
    Line-buffered reader and classifier of device output.

    Example:
        monitor = SerialMonitor(handle, ownership, hub)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        handle: DeviceHandle,
        ownership: TransportOwnership,
        hub: EventHub,
        history: int = DEFAULT_HISTORY,
        raw: bool = False,
    ):
        self.handle = handle
        self.ownership = ownership
        self.hub = hub
        self.history: Deque[LogEvent] = deque(maxlen=history)
        self.raw = raw
        self._decoder = LineDecoder()
        self._raw_offset = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin reading. No-op if already running or the handle is closed."""
        if self.running:
            return
        if not self.handle.is_open:
            logger.debug("Monitor not started: handle is closed")
            return
        self._decoder.reset()
        self._raw_offset = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Cancel the pending read and wait until ownership is released."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        # A partial line at stop time belongs to output the next owner discards
        self._decoder.reset()

    async def restart(self, delay: float = RESTART_DELAY) -> None:
        await self.stop()
        await asyncio.sleep(delay)
        self.start()

    def _emit(self, text: str, severity: Optional[Severity] = None) -> None:
        event = LogEvent(text=text, severity=severity or classify_line(text), source=OWNER)
        self.history.append(event)
        self.hub.publish(event)

    async def _run(self) -> None:
        async with self.ownership.hold(OWNER):
            stream = self.handle.read()
            try:
                async for data in stream:
                    if self.raw:
                        for row in hexdump_lines(data, self._raw_offset):
                            self._emit(row, Severity.INFO)
                        self._raw_offset += len(data)
                        continue
                    for line in self._decoder.feed(data):
                        self._emit(line)
            except ConnectionError as e:
                logger.warning(f"Monitor read failed: {e}")
                self._emit(f"Serial read error: {e}", Severity.ERROR)
            finally:
                await stream.aclose()

    def export_text(self) -> str:
        """History as ``[HH:MM:SS] text`` lines."""
        return "\n".join(event.format() for event in self.history)

    def clear(self) -> None:
        self.history.clear()
