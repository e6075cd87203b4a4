"""
Flash Orchestrator

Drives one flash or erase session at a time through

    IDLE -> CONNECTING -> ERASING -> WRITING -> VERIFYING -> COMPLETE
                                 \\-> COMPLETE (erase only)
    any non-terminal stage -> ERROR

and reports every step as a FlashUpdate on an async stream. The
orchestrator stops the serial monitor and takes the transport ownership
token for the duration of a session, then resets the device and hands the
transport back to the monitor after a settle delay.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..errors import ConnectionError, FlasherError, SessionBusyError, VerificationError, WriteError
from ..firmware import CHUNK_SIZE, FirmwareImage
from ..protocol.bootloader import BootloaderDriver, compute_progress
from ..protocol.transport import DeviceHandle
from .events import EventHub, LogEvent, Severity, Subscription
from .monitor import SerialMonitor
from .ownership import TransportOwnership
from .parsing import format_size

logger = logging.getLogger(__name__)

OWNER = "orchestrator"
DEFAULT_SETTLE_DELAY = 1.5
SECTOR_SIZE = 4096


class FlashStage(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ERASING = "erasing"
    WRITING = "writing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (FlashStage.COMPLETE, FlashStage.ERROR)


_TRANSITIONS = {
    FlashStage.IDLE: {FlashStage.CONNECTING},
    FlashStage.CONNECTING: {FlashStage.ERASING},
    FlashStage.ERASING: {FlashStage.WRITING, FlashStage.COMPLETE},
    FlashStage.WRITING: {FlashStage.WRITING, FlashStage.VERIFYING},
    FlashStage.VERIFYING: {FlashStage.VERIFYING, FlashStage.COMPLETE},
    FlashStage.COMPLETE: set(),
    FlashStage.ERROR: set(),
}


@dataclass(frozen=True)
class FlashUpdate:
    """One item of a session's progress stream."""
    stage: FlashStage
    progress: int
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class FlashSession:
    """
    State of the active session. Only the orchestrator mutates it.

    Attributes:
        kind: "flash" or "erase"
        stage: Current stage
        progress: 0-100, never decreases
        message: Latest status message
        started_at: Session start (epoch seconds)
        verified: Digest check outcome for flashes; False when skipped,
                  None until the check runs
    """
    kind: str
    stage: FlashStage = FlashStage.IDLE
    progress: int = 0
    message: str = ""
    started_at: float = field(default_factory=time.time)
    verified: Optional[bool] = None

    def advance(self, stage: FlashStage, progress: Optional[int] = None, message: str = "") -> FlashUpdate:
        """
        Move to stage and return the matching update.

        Raises:
            RuntimeError: Illegal transition
        """
        if stage == FlashStage.ERROR:
            if self.stage.terminal:
                raise RuntimeError(f"Session already ended in {self.stage.value}")
        elif stage not in _TRANSITIONS[self.stage]:
            raise RuntimeError(f"Illegal transition {self.stage.value} -> {stage.value}")
        if stage == FlashStage.COMPLETE and self.stage == FlashStage.ERASING and self.kind != "erase":
            raise RuntimeError("Flash sessions must write before completing")
        if progress is not None:
            self.progress = max(self.progress, max(0, min(100, progress)))
        self.stage = stage
        self.message = message
        return FlashUpdate(stage=stage, progress=self.progress, message=message)

    @property
    def elapsed(self) -> float:
        return time.time() - self.started_at


class SessionStream:
    """
    Async iterator over one session's updates.

    Iteration ends after the terminal (COMPLETE or ERROR) update.
    """

    def __init__(self, session: FlashSession, subscription: Subscription, task: Optional[asyncio.Task] = None):
        self.session = session
        self._sub = subscription
        self._done = False
        self.task = task
        self.last: Optional[FlashUpdate] = None

    def __aiter__(self) -> "SessionStream":
        return self

    async def __anext__(self) -> FlashUpdate:
        if self._done:
            raise StopAsyncIteration
        update = await self._sub.get()
        self.last = update
        if update.stage.terminal:
            self._done = True
        return update

    async def wait(self) -> FlashUpdate:
        """Consume the stream and return the terminal update once the session task has ended."""
        async for _ in self:
            pass
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        if self.last is None:
            raise RuntimeError("Session ended without an update")
        return self.last


DriverFactory = Callable[[DeviceHandle], BootloaderDriver]


class FlashOrchestrator:
    """
    Session state machine for one device.

    Example:
        orchestrator = FlashOrchestrator(ownership, monitor)
        stream = orchestrator.flash(handle, image)
        async for update in stream:
            print(update.stage, update.progress, update.message)
    """

    def __init__(
        self,
        ownership: TransportOwnership,
        monitor: Optional[SerialMonitor] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        chunk_size: int = CHUNK_SIZE,
        timeout: float = 0.5,
        retries: int = 5,
        driver_factory: Optional[DriverFactory] = None,
        updates: Optional[EventHub] = None,
        logs: Optional[EventHub] = None,
    ):
        """
        Args:
            ownership: Token shared with the monitor
            monitor: Monitor to suspend during sessions (optional)
            settle_delay: Wait before resuming the monitor after a session
            chunk_size: Bytes per write
            timeout: Per-attempt handshake/identity timeout for the driver
            retries: Programming-mode entry attempts
            driver_factory: Builds a BootloaderDriver for a handle
            updates: Hub that receives every FlashUpdate
            logs: Hub that receives stage-change LogEvents
        """
        self.ownership = ownership
        self.monitor = monitor
        self.settle_delay = settle_delay
        self.chunk_size = chunk_size
        self.driver_factory = driver_factory or (
            lambda handle: BootloaderDriver(handle, timeout=timeout, retries=retries, chunk_size=chunk_size)
        )
        self.updates: EventHub = updates if updates is not None else EventHub("updates")
        self.logs: EventHub = logs if logs is not None else EventHub("logs")

        self.session: Optional[FlashSession] = None
        self.last_session: Optional[FlashSession] = None
        self._task: Optional[asyncio.Task] = None
        self._resume_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.session is not None

    @property
    def stage(self) -> FlashStage:
        if self.session is not None:
            return self.session.stage
        if self.last_session is not None:
            return self.last_session.stage
        return FlashStage.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def flash(
        self,
        handle: Optional[DeviceHandle],
        image: FirmwareImage,
        verify_supported: bool = True,
    ) -> SessionStream:
        """
        Start a flash session.

        Returns immediately; the session runs as a task. When
        verify_supported is False (the device did not advertise VERIFY at
        identification) the verify exchange is skipped.

        Raises:
            ConnectionError: No open handle
            SessionBusyError: A session is already active
        """
        buffer = image.chunk_count(self.chunk_size) + 16

        async def work(session: FlashSession, driver: BootloaderDriver) -> None:
            driver.supports_verify = driver.supports_verify and verify_supported
            await self._flash_image(session, driver, image)

        return self._start("flash", handle, work, buffer)

    def erase(self, handle: Optional[DeviceHandle], flash_size: Optional[int] = None) -> SessionStream:
        """
        Start an erase-only session covering the whole flash.

        Raises:
            ConnectionError: No open handle
            SessionBusyError: A session is already active
        """
        async def work(session: FlashSession, driver: BootloaderDriver) -> None:
            await self._erase_all(session, driver, flash_size)

        return self._start("erase", handle, work, 16)

    async def cancel(self) -> None:
        """Cancel the active session and any pending monitor resume."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        resume = self._resume_task
        if resume is not None and not resume.done():
            resume.cancel()
            await asyncio.gather(resume, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session machinery
    # ------------------------------------------------------------------

    def _start(
        self,
        kind: str,
        handle: Optional[DeviceHandle],
        work: Callable[[FlashSession, BootloaderDriver], Awaitable[None]],
        buffer: int,
    ) -> SessionStream:
        if handle is None or not handle.is_open:
            raise ConnectionError("No device connected")
        if self.active:
            raise SessionBusyError(f"A {self.session.kind} session is already in progress")

        resume = self._resume_task
        if resume is not None and not resume.done():
            resume.cancel()
        self._resume_task = None

        session = FlashSession(kind=kind)
        self.session = session
        sub = self.updates.subscribe(maxsize=max(buffer, 16))
        self._task = asyncio.get_running_loop().create_task(self._run(session, handle, work, sub))
        return SessionStream(session, sub, self._task)

    def _advance(self, session: FlashSession, stage: FlashStage, progress: Optional[int], message: str) -> None:
        changed = stage != session.stage
        update = session.advance(stage, progress, message)
        self.updates.publish(update)
        if changed:
            logger.info(f"[{session.kind}] {stage.value}: {message}")
            severity = {
                FlashStage.COMPLETE: Severity.SUCCESS,
                FlashStage.ERROR: Severity.ERROR,
            }.get(stage, Severity.INFO)
            self.logs.publish(LogEvent(text=message, severity=severity, source=OWNER))

    def _fail(self, session: FlashSession, message: str) -> None:
        if not session.stage.terminal:
            self._advance(session, FlashStage.ERROR, None, message)

    async def _run(
        self,
        session: FlashSession,
        handle: DeviceHandle,
        work: Callable[[FlashSession, BootloaderDriver], Awaitable[None]],
        sub: Subscription,
    ) -> None:
        try:
            try:
                if self.monitor is not None:
                    await self.monitor.stop()
                async with self.ownership.hold(OWNER):
                    driver = self.driver_factory(handle)
                    try:
                        self._advance(session, FlashStage.CONNECTING, 0, "Entering programming mode")
                        await driver.enter_programming_mode()
                        await work(session, driver)
                        await driver.reset()
                        self._advance(session, FlashStage.COMPLETE, 100, self._success_message(session))
                    except Exception:
                        await driver.reset()
                        raise
                    finally:
                        await driver.release()
            except FlasherError as e:
                self._fail(session, str(e))
            except Exception as e:
                logger.exception("Unexpected error during session")
                self._fail(session, str(e) or type(e).__name__)
        except asyncio.CancelledError:
            self._fail(session, "Session cancelled")
            raise
        finally:
            self.last_session = session
            self.session = None
            self.updates.unsubscribe(sub)
            self._schedule_resume(handle)

    def _success_message(self, session: FlashSession) -> str:
        elapsed = session.elapsed
        if session.kind == "erase":
            return f"Erase complete in {elapsed:.1f}s"
        return f"Flash complete in {elapsed:.1f}s"

    async def _flash_image(self, session: FlashSession, driver: BootloaderDriver, image: FirmwareImage) -> None:
        total = image.length
        erase_len = -(-total // SECTOR_SIZE) * SECTOR_SIZE
        self._advance(session, FlashStage.ERASING, 0, f"Erasing {format_size(erase_len)}")
        await driver.erase_region(0, erase_len)

        self._advance(session, FlashStage.WRITING, 0, f"Writing {total:,} bytes")
        written = 0
        for offset, chunk in image.chunks(self.chunk_size):
            written += await driver.write_chunk(offset, chunk)
            self._advance(
                session,
                FlashStage.WRITING,
                compute_progress(written, total),
                f"Written {written:,} / {total:,} bytes",
            )
        if written != total:
            raise WriteError(f"Wrote {written:,} of {total:,} bytes", written)

        if not driver.supports_verify:
            session.verified = False
            self._advance(session, FlashStage.VERIFYING, 100, "Verification not supported by device; skipped")
            return
        self._advance(session, FlashStage.VERIFYING, 100, "Verifying flash contents")
        try:
            matched = await driver.verify()
        except VerificationError:
            if driver.supports_verify:
                raise
            session.verified = False
            self._advance(session, FlashStage.VERIFYING, 100, "Verification not supported by device; skipped")
            return
        if not matched:
            raise VerificationError("Verification failed: flash contents do not match the firmware image")
        session.verified = True
        self._advance(session, FlashStage.VERIFYING, 100, "Verification passed")

    async def _erase_all(self, session: FlashSession, driver: BootloaderDriver, flash_size: Optional[int]) -> None:
        size = flash_size or await driver.detect_flash_size()
        self._advance(session, FlashStage.ERASING, 0, f"Erasing entire flash ({format_size(size)})")
        await driver.erase_region(0, size)

    def _schedule_resume(self, handle: DeviceHandle) -> None:
        if self.monitor is None or not handle.is_open:
            return
        self._resume_task = asyncio.get_running_loop().create_task(self._resume_monitor(handle))

    async def _resume_monitor(self, handle: DeviceHandle) -> None:
        await asyncio.sleep(self.settle_delay)
        if handle.is_open and not self.active:
            logger.debug("Resuming serial monitor")
            self.monitor.start()
