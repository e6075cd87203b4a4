"""Tests for the DeviceController lifecycle."""

import pytest

from device_flasher.config import ConnectionConfig
from device_flasher.core.device import DeviceController
from device_flasher.core.events import Severity
from device_flasher.core.orchestrator import FlashStage
from device_flasher.core.safety import allowlist_permission
from device_flasher.errors import ConnectionError, FlashPermissionError
from device_flasher.firmware import FirmwareImage, FirmwareImageError
from device_flasher.protocol.simulated import (
    SimulatedDevice,
    SimulatedTransport,
    SimulationTiming,
)


class TestConnect:
    """Connecting to the simulated device."""

    async def test_device_info(self, controller):
        """connect() reports the device identity."""
        info = controller.device_info
        assert info.chip_type == "ESP32-S3"
        assert info.mac_address == "94:B9:7E:12:34:56"
        assert info.flash_size == 4 * 1024 * 1024
        assert info.transport == "simulated"
        assert info.port == "sim://sim0"
        assert controller.is_connected()

    async def test_monitor_started(self, controller):
        """The monitor runs once connected."""
        assert controller.monitor.running

    async def test_connect_event(self, sim_transport, config):
        """Subscribers see a success event on connect."""
        async with DeviceController(transport=sim_transport) as device:
            sub = device.subscribe()
            await device.connect(config)
            events = sub.pending()
        assert any(e.severity == Severity.SUCCESS and "ESP32-S3" in e.text for e in events)

    async def test_handshake_failure_closes_handle(self, sim_transport, sim_device, config):
        """A device that never syncs fails with ConnectionError and is released."""
        sim_device.drop_sync_acks = 100
        device = DeviceController(transport=sim_transport)
        with pytest.raises(ConnectionError, match="Cannot identify device"):
            await device.connect(config)
        assert not device.is_connected()
        assert not sim_device.attached

    async def test_device_in_use(self, sim_transport, config):
        """A second controller cannot open a device that is already open."""
        async with DeviceController(transport=sim_transport) as first:
            await first.connect(config)
            second = DeviceController(transport=sim_transport)
            with pytest.raises(ConnectionError, match="already in use"):
                await second.connect(config)


class TestNotConnected:
    """Operations that need a connection."""

    async def test_erase_without_connect(self, sim_transport, sim_device):
        """erase() before connect() fails before any bytes are sent."""
        device = DeviceController(transport=sim_transport)
        with pytest.raises(ConnectionError, match="No device connected"):
            device.erase()
        assert sim_device.commands == []
        assert not sim_device.attached

    async def test_flash_without_connect(self, sim_transport):
        """flash() before connect() fails too."""
        device = DeviceController(transport=sim_transport)
        with pytest.raises(ConnectionError):
            device.flash(FirmwareImage.from_bytes(b"\x00" * 10))

    async def test_disconnect_is_idempotent(self, sim_transport):
        """Disconnecting an unconnected controller does nothing."""
        device = DeviceController(transport=sim_transport)
        await device.disconnect()
        await device.disconnect()
        assert device.device_info is None


class TestDisconnectDuringFlash:
    """Cancelling a session by disconnecting."""

    async def test_disconnect_mid_write_then_reconnect(self, config):
        """Disconnect cancels the session, closes the handle, and allows reconnect."""
        sim_device = SimulatedDevice(
            timing=SimulationTiming(sync=0, erase=0, write=0.01, verify=0, boot_line=0)
        )
        device = DeviceController(transport=SimulatedTransport(sim_device))
        await device.connect(config)
        handle = device.handle

        stream = device.flash(FirmwareImage.from_bytes(b"\x11" * 200000))
        async for update in stream:
            if update.stage == FlashStage.WRITING and update.progress > 0:
                break

        await device.disconnect()
        assert not handle.is_open
        assert not device.is_connected()
        assert sim_device.write_calls < 49

        remaining = [u async for u in stream]
        assert remaining[-1].stage == FlashStage.ERROR
        assert remaining[-1].message == "Session cancelled"

        info = await device.connect(config)
        assert info.chip_type == "ESP32-S3"
        assert device.is_connected()
        last = await device.erase().wait()
        assert last.stage == FlashStage.COMPLETE
        await device.disconnect()


class TestPermissions:
    """The permission hook and size checks run before a flash starts."""

    async def test_permission_denied(self, sim_transport, sim_device, config):
        """A denying hook blocks the flash with FlashPermissionError."""
        async with DeviceController(transport=sim_transport, permission_check=lambda info: False) as device:
            await device.connect(config)
            with pytest.raises(FlashPermissionError) as exc_info:
                device.flash(FirmwareImage.from_bytes(b"\x00" * 100))
        assert exc_info.value.details["mac_address"] == "94:B9:7E:12:34:56"
        assert sim_device.write_calls == 0

    async def test_allowlist_permits(self, sim_transport, config):
        """An allowlisted MAC may be flashed."""
        check = allowlist_permission(["94-b9-7e-12-34-56"])
        async with DeviceController(transport=sim_transport, permission_check=check) as device:
            await device.connect(config)
            last = await device.flash(FirmwareImage.from_bytes(b"\x00" * 100)).wait()
        assert last.stage == FlashStage.COMPLETE

    async def test_image_larger_than_flash(self, config):
        """An image bigger than the flash is rejected up front."""
        small = SimulatedDevice(flash_size=64 * 1024, timing=SimulationTiming.instant())
        async with DeviceController(transport=SimulatedTransport(small)) as device:
            await device.connect(config)
            with pytest.raises(FirmwareImageError, match="exceeds flash size"):
                device.flash(FirmwareImage.from_bytes(b"\x00" * (64 * 1024 + 1)))
        assert small.write_calls == 0


class TestTransportSelection:
    """Without an explicit transport the controller probes once."""

    async def test_simulate_config_selects_simulator(self):
        """simulate=True picks the simulated transport on connect."""
        async with DeviceController() as device:
            await device.connect(ConnectionConfig(simulate=True, timeout=0.5, settle_delay=0.01))
            assert device.transport.kind == "simulated"
            assert device.device_info.port == "sim://esp32-s3"
