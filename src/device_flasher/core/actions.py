"""
Core workflow actions.

Synchronous entry points for the CLI. Each runs one asyncio event loop,
drives a DeviceController, and reports back an OperationResult with the
log lines captured along the way. All flash and erase operations go
through the safety context for gating.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

from ..config import ConnectionConfig
from ..errors import FlasherError
from ..firmware import FirmwareImage
from ..protocol.transport import Transport
from .device import DeviceController, PermissionCheck
from .events import LogEvent
from .orchestrator import FlashStage, FlashUpdate, SessionStream
from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FlashUpdate], Any]
EventCallback = Callable[[LogEvent], Any]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "device_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _attach(controller: DeviceController, result: OperationResult) -> None:
    if controller.device_info is not None:
        result.attach_device(controller.device_info)


async def _drain(stream: SessionStream, result: OperationResult, progress_cb: Optional[ProgressCallback]) -> None:
    async for update in stream:
        result.record(update)
        if progress_cb is not None:
            progress_cb(update)
    if stream.task is not None:
        await asyncio.gather(stream.task, return_exceptions=True)
    if stream.session.kind == "flash" and stream.session.stage == FlashStage.COMPLETE:
        result.verified = bool(stream.session.verified)
        if not result.verified:
            result.add_warning("Device does not support verification; verification skipped")
    result.finish()


async def wait_for_interrupt() -> None:
    """Block until the surrounding task is cancelled (Ctrl-C under asyncio.run)."""
    await asyncio.Event().wait()


def _run_workflow(operation: str, config: ConnectionConfig, run, **failure_fields) -> OperationResult:
    with _capture_logs() as logs:
        try:
            result = asyncio.run(run())
        except FlasherError as e:
            result = OperationResult.failure(operation, str(e), port=config.port or "", **failure_fields)
        if result.finished_at is None:
            result.finished_at = time.time()
        result.logs = logs
        return result


def read_device_info(
    config: ConnectionConfig,
    transport: Optional[Transport] = None,
) -> OperationResult:
    """
    Connect, identify the device, and disconnect.

    Returns:
        OperationResult whose device field holds the DeviceInfo
    """
    async def run() -> OperationResult:
        result = OperationResult(ok=True, operation="read_device_info", port=config.port or "")
        async with DeviceController(transport=transport) as controller:
            await controller.connect(config)
            _attach(controller, result)
        return result

    return _run_workflow("read_device_info", config, run)


def flash_firmware(
    config: ConnectionConfig,
    image: FirmwareImage,
    safety_ctx: SafetyContext,
    progress_cb: Optional[ProgressCallback] = None,
    permission_check: Optional[PermissionCheck] = None,
    transport: Optional[Transport] = None,
) -> OperationResult:
    """
    Flash image onto the device described by config.

    Args:
        config: Connection parameters
        image: Firmware to write at offset 0
        safety_ctx: Safety context for gating
        progress_cb: Called with every FlashUpdate
        permission_check: Optional allow/deny hook for the device
        transport: Override the probed transport

    Returns:
        OperationResult; ok only when the session ended in COMPLETE

    Raises:
        WritePermissionError: If safety check fails
    """
    require_write_permission(
        safety_ctx,
        target_region=f"0x000000-0x{image.length:06X}",
        bytes_length=image.length,
        offset=0,
    )

    async def run() -> OperationResult:
        result = OperationResult(
            ok=True,
            operation="flash_firmware",
            port=config.port or "",
            bytes_len=image.length,
            sha256=image.sha256,
        )
        async with DeviceController(transport=transport, permission_check=permission_check) as controller:
            await controller.connect(config)
            _attach(controller, result)
            await _drain(controller.flash(image), result, progress_cb)
        return result

    return _run_workflow("flash_firmware", config, run, bytes_len=image.length, sha256=image.sha256)


def erase_flash(
    config: ConnectionConfig,
    safety_ctx: SafetyContext,
    progress_cb: Optional[ProgressCallback] = None,
    transport: Optional[Transport] = None,
) -> OperationResult:
    """
    Erase the entire flash of the device described by config.

    Raises:
        WritePermissionError: If safety check fails
    """
    require_write_permission(safety_ctx, target_region="entire flash", bytes_length=0)

    async def run() -> OperationResult:
        result = OperationResult(ok=True, operation="erase_flash", port=config.port or "")
        async with DeviceController(transport=transport) as controller:
            await controller.connect(config)
            _attach(controller, result)
            result.bytes_len = controller.device_info.flash_size
            await _drain(controller.erase(), result, progress_cb)
        return result

    return _run_workflow("erase_flash", config, run)


def monitor_device(
    config: ConnectionConfig,
    on_event: Optional[EventCallback] = None,
    duration: Optional[float] = None,
    raw: bool = False,
    transport: Optional[Transport] = None,
) -> OperationResult:
    """
    Stream device output until duration elapses, or until interrupted.

    An interrupt (Ctrl-C, which asyncio.run turns into cancellation of the
    running task) ends monitoring normally: the captured history is still
    returned so the caller can save it.

    Args:
        config: Connection parameters
        on_event: Called with every LogEvent
        duration: Seconds to monitor; None runs until interrupted
        raw: Report device output as hex dump rows
        transport: Override the probed transport

    Returns:
        OperationResult with lines holding the exported history
    """
    async def run() -> OperationResult:
        result = OperationResult(ok=True, operation="monitor_device", port=config.port or "")
        async with DeviceController(transport=transport, raw_monitor=raw) as controller:
            if on_event is not None:
                controller.subscribe(on_event)
            await controller.connect(config)
            _attach(controller, result)
            try:
                if duration is None:
                    await wait_for_interrupt()
                else:
                    await asyncio.sleep(duration)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None:
                    current.uncancel()
                logger.info("Monitoring interrupted")
            result.lines = controller.export_logs().splitlines()
        return result

    return _run_workflow("monitor_device", config, run)
