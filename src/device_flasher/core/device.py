"""
Device controller.

One DeviceController per physical device. It owns the transport handle,
the serial monitor, the flash orchestrator, and the event hubs; nothing is
shared between controllers.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

from ..config import ConnectionConfig
from ..errors import ConnectionError, FlasherError, FlashPermissionError
from ..firmware import FirmwareImage, FirmwareImageError
from ..protocol.bootloader import BootloaderDriver
from ..protocol.transport import DeviceHandle, Transport, select_transport
from .events import EventHub, LogEvent, Severity, Subscription
from .monitor import RESTART_DELAY, SerialMonitor, default_log_filename
from .orchestrator import FlashOrchestrator, SessionStream
from .ownership import TransportOwnership
from .parsing import format_size

logger = logging.getLogger(__name__)

OWNER = "controller"


@dataclass(frozen=True)
class DeviceInfo:
    """Identity of a connected device, fixed for the life of the connection."""
    chip_type: str
    mac_address: str
    flash_size: int
    port: str = ""
    transport: str = ""
    supports_verify: bool = True

    def to_dict(self) -> dict:
        return {
            "chip_type": self.chip_type,
            "mac_address": self.mac_address,
            "flash_size": self.flash_size,
            "port": self.port,
            "transport": self.transport,
            "supports_verify": self.supports_verify,
        }


PermissionCheck = Callable[[DeviceInfo], bool]


class DeviceController:
    """
    Connect, flash, erase, and monitor one device.

    Example:
        async with DeviceController() as device:
            info = await device.connect(ConnectionConfig(port="/dev/ttyUSB0"))
            stream = device.flash(FirmwareImage.from_file("app.bin"))
            async for update in stream:
                print(update.progress, update.message)
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        permission_check: Optional[PermissionCheck] = None,
        history: int = 500,
        raw_monitor: bool = False,
    ):
        """
        Args:
            transport: Transport to use; chosen by capability probing on the
                       first connect() when omitted
            permission_check: Optional allow/deny hook consulted before flash()
            history: Monitor history length (lines)
            raw_monitor: Publish device output as hex dump rows instead of
                         decoded lines
        """
        self.transport = transport
        self.permission_check = permission_check
        self.history = history
        self.raw_monitor = raw_monitor

        self.logs: EventHub[LogEvent] = EventHub("logs")
        self.updates: EventHub = EventHub("updates")
        self.ownership = TransportOwnership()

        self.config: Optional[ConnectionConfig] = None
        self.handle: Optional[DeviceHandle] = None
        self.device_info: Optional[DeviceInfo] = None
        self.monitor: Optional[SerialMonitor] = None
        self.orchestrator: Optional[FlashOrchestrator] = None

    async def __aenter__(self) -> "DeviceController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _log(self, text: str, severity: Severity = Severity.INFO) -> None:
        logger.info(text)
        self.logs.publish(LogEvent(text=text, severity=severity, source=OWNER))

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self.handle is not None and self.handle.is_open

    async def connect(self, config: ConnectionConfig) -> DeviceInfo:
        """
        Open the device, identify it, and start the monitor.

        Raises:
            ConnectionError: The port cannot be opened or the device does
                             not answer the bootloader handshake
        """
        if self.is_connected():
            await self.disconnect()
        if self.transport is None:
            self.transport = select_transport(config)

        self._log(f"Connecting to {config.port or 'device'} via {self.transport.kind} transport...")
        handle = await self.transport.open(config)
        driver = BootloaderDriver(
            handle,
            timeout=config.timeout,
            retries=config.handshake_retries,
            chunk_size=config.chunk_size,
        )
        try:
            async with self.ownership.hold(OWNER):
                try:
                    await driver.enter_programming_mode()
                    identity = await driver.query_identity()
                    flash_size = await driver.detect_flash_size()
                finally:
                    await driver.reset()
                    await driver.release()
        except ConnectionError:
            await handle.close()
            raise
        except FlasherError as e:
            await handle.close()
            raise ConnectionError(f"Cannot identify device on {handle.name}: {e}") from e
        except BaseException:
            await handle.close()
            raise

        info = DeviceInfo(
            chip_type=identity.chip_type,
            mac_address=identity.mac_address,
            flash_size=flash_size,
            port=handle.name,
            transport=self.transport.kind,
            supports_verify=driver.supports_verify,
        )
        self.config = config
        self.handle = handle
        self.device_info = info
        self.monitor = SerialMonitor(
            handle, self.ownership, self.logs, history=self.history, raw=self.raw_monitor
        )
        self.orchestrator = FlashOrchestrator(
            self.ownership,
            self.monitor,
            settle_delay=config.settle_delay,
            chunk_size=config.chunk_size,
            timeout=config.timeout,
            retries=config.handshake_retries,
            updates=self.updates,
            logs=self.logs,
        )
        self.monitor.start()
        self._log(
            f"Connected to {info.chip_type} ({info.mac_address}), {format_size(info.flash_size)} flash",
            Severity.SUCCESS,
        )
        return info

    async def disconnect(self) -> None:
        """Cancel any session, stop the monitor, and close the handle."""
        if self.orchestrator is not None:
            await self.orchestrator.cancel()
        if self.monitor is not None:
            await self.monitor.stop()
        handle = self.handle
        if handle is not None:
            await handle.close()
            self._log(f"Disconnected from {handle.name}")
        self.handle = None
        self.device_info = None
        self.monitor = None
        self.orchestrator = None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self.is_connected() or self.orchestrator is None:
            raise ConnectionError("No device connected")

    def flash(self, image: FirmwareImage) -> SessionStream:
        """
        Start flashing image.

        Raises:
            ConnectionError: Not connected
            FlashPermissionError: Permission hook denied the device
            FirmwareImageError: Image larger than the device flash
            SessionBusyError: A session is already active
        """
        self._require_connected()
        info = self.device_info
        if self.permission_check is not None and not self.permission_check(info):
            raise FlashPermissionError(
                f"Flashing is not permitted for {info.chip_type} ({info.mac_address})",
                details=info.to_dict(),
            )
        if image.length > info.flash_size:
            raise FirmwareImageError(
                f"Firmware is {image.length:,} bytes, exceeds flash size of {info.flash_size:,} bytes"
            )
        self._log(f"Flashing {image.name} ({image.length:,} bytes, sha256 {image.sha256[:16]}...)")
        return self.orchestrator.flash(self.handle, image, verify_supported=info.supports_verify)

    def erase(self) -> SessionStream:
        """
        Erase the whole flash.

        Raises:
            ConnectionError: Not connected
            SessionBusyError: A session is already active
        """
        self._require_connected()
        return self.orchestrator.erase(self.handle, self.device_info.flash_size)

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def subscribe(self, handler: Optional[Callable[[LogEvent], Any]] = None, maxsize: int = 256) -> Subscription:
        """Subscribe to LogEvents from the monitor, orchestrator, and controller."""
        return self.logs.subscribe(handler, maxsize=maxsize)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.logs.unsubscribe(subscription)

    async def restart_monitor(self, delay: float = RESTART_DELAY) -> None:
        self._require_connected()
        await self.monitor.restart(delay)

    def export_logs(self) -> str:
        if self.monitor is None:
            return ""
        return self.monitor.export_text()

    def save_logs(self, path: Optional[Union[str, Path]] = None) -> Path:
        """
        Write monitor history to path (default: esp32-logs-YYYY-MM-DD.txt).
        """
        target = Path(path) if path is not None else Path(default_log_filename())
        if target.is_dir():
            target = target / default_log_filename()
        target.write_text(self.export_logs() + "\n", encoding="utf-8")
        return target
