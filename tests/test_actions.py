"""Tests for the synchronous workflows used by the CLI."""

import asyncio

import pytest

from device_flasher.config import ConnectionConfig
from device_flasher.core.actions import (
    erase_flash,
    flash_firmware,
    monitor_device,
    read_device_info,
)
from device_flasher.core.messages import (
    MessageLevel,
    WarningCode,
    code_for_error,
    result_to_warnings,
    warning_for_error,
)
from device_flasher.core import actions
from device_flasher.core.orchestrator import FlashStage
from device_flasher.core.results import OperationResult
from device_flasher.core.safety import (
    SafetyContext,
    WritePermissionError,
    allowlist_permission,
    create_cli_safety_context,
    load_allowlist,
    require_write_permission,
)
from device_flasher.errors import HandshakeTimeout, WriteError
from device_flasher.firmware import FirmwareImage
from device_flasher.protocol.simulated import SimulatedDevice, SimulatedTransport, SimulationTiming


@pytest.fixture
def sync_config():
    return ConnectionConfig(port="sim0", timeout=0.2, handshake_retries=2, settle_delay=0.01)


def fresh_transport(**faults):
    device = SimulatedDevice(timing=SimulationTiming.instant())
    for name, value in faults.items():
        setattr(device, name, value)
    return SimulatedTransport(device)


class TestSafety:
    """Write gating."""

    def test_write_flag_required(self):
        """Without --write every write is refused."""
        with pytest.raises(WritePermissionError, match="--write"):
            require_write_permission(SafetyContext(), "entire flash", 0)

    def test_token_required(self):
        """Non-interactive writes need the WRITE token."""
        ctx = SafetyContext(write_enabled=True, confirmation_token="yes")
        with pytest.raises(WritePermissionError, match="token mismatch"):
            require_write_permission(ctx, "entire flash", 0)
        require_write_permission(SafetyContext(write_enabled=True, confirmation_token="write"), "x", 1)

    def test_interactive_prompt(self):
        """Interactive confirmation shows details and checks the answer."""
        shown = []
        ctx = SafetyContext(
            write_enabled=True,
            interactive=True,
            prompt_confirmation=lambda prompt: "WRITE",
            show_details=shown.append,
        )
        require_write_permission(ctx, "0x000000-0x000400", 1024, offset=0)
        assert shown[0]["bytes_length"] == 1024

        ctx.prompt_confirmation = lambda prompt: "no"
        with pytest.raises(WritePermissionError, match="cancelled"):
            require_write_permission(ctx, "0x000000-0x000400", 1024)

    def test_simulated_skips_gating(self):
        """Simulated targets need no confirmation."""
        require_write_permission(SafetyContext(simulate=True), "entire flash", 0)

    def test_load_allowlist(self, tmp_path):
        """Allowlist files accept comments and blank lines."""
        path = tmp_path / "allow.txt"
        path.write_text("# lab boards\n94:B9:7E:12:34:56\n\naa-bb-cc-dd-ee-ff  # spare\n")
        check = load_allowlist(path)

        class Info:
            mac_address = "94:b9:7e:12:34:56"

        assert check(Info())
        Info.mac_address = "11:22:33:44:55:66"
        assert not check(Info())

    def test_allowlist_rejects_garbage(self):
        """Entries must be MAC addresses."""
        with pytest.raises(ValueError):
            allowlist_permission(["not-a-mac"])


class TestWorkflows:
    """End-to-end workflows against the simulated device."""

    def test_read_device_info(self, sync_config):
        """The DeviceInfo is attached along with a simulation warning."""
        result = read_device_info(sync_config, transport=fresh_transport())
        assert result.ok
        assert result.chip == "ESP32-S3"
        assert result.device.mac_address == "94:B9:7E:12:34:56"
        assert result.simulated
        assert result.to_dict()["device"]["flash_size"] == 4 * 1024 * 1024
        assert any("Simulated" in w for w in result.warnings)

    def test_read_device_info_failure(self, sync_config):
        """An unresponsive device yields a failed result, not an exception."""
        result = read_device_info(sync_config, transport=fresh_transport(drop_sync_acks=100))
        assert not result.ok
        assert "Cannot identify device" in result.errors[0]

    def test_flash_firmware(self, sync_config):
        """A flash records stages, hashes, and progress callbacks."""
        image = FirmwareImage.from_bytes(b"\xA5" * 10000)
        progress = []
        result = flash_firmware(
            sync_config,
            image,
            create_cli_safety_context(write_enabled=True),
            progress_cb=lambda update: progress.append(update.progress),
            transport=fresh_transport(),
        )
        assert result.ok, result.errors
        assert [stage.value for stage in result.stages] == ["connecting", "erasing", "writing", "verifying", "complete"]
        assert result.final.stage == FlashStage.COMPLETE
        assert result.sha256 == image.sha256
        assert result.verified is True
        assert result.finished_at is not None
        assert progress[-1] == 100
        assert any("Bootloader synchronized" in line for line in result.logs)

    def test_flash_without_permission(self, sync_config):
        """The gate runs before any connection is made."""
        transport = fresh_transport()
        with pytest.raises(WritePermissionError):
            flash_firmware(sync_config, FirmwareImage.from_bytes(b"\x00"), SafetyContext(), transport=transport)
        assert transport.device.commands == []

    def test_flash_failure_reported(self, sync_config):
        """A failing write ends with ok=False and the device message."""
        result = flash_firmware(
            sync_config,
            FirmwareImage.from_bytes(b"\x00" * 9000),
            create_cli_safety_context(write_enabled=True),
            transport=fresh_transport(fail_write_at=4096),
        )
        assert not result.ok
        assert result.stages[-1] == FlashStage.ERROR
        assert result.verified is None
        assert "Write failed at offset 0x00001000" in result.errors[0]
        codes = [w.code for w in result_to_warnings(result)]
        assert WarningCode.W_WRITE_FAILED in codes

    def test_flash_verify_unsupported(self, sync_config):
        """Devices without VERIFY succeed with a skipped-verification warning."""
        result = flash_firmware(
            sync_config,
            FirmwareImage.from_bytes(b"\x00" * 100),
            create_cli_safety_context(write_enabled=True),
            transport=fresh_transport(verify_supported=False),
        )
        assert result.ok
        assert result.verified is False
        assert any("verification skipped" in w for w in result.warnings)

    def test_erase_flash(self, sync_config):
        """Erase reports the flash size and no write stage."""
        result = erase_flash(sync_config, create_cli_safety_context(write_enabled=True), transport=fresh_transport())
        assert result.ok
        assert result.bytes_len == 4 * 1024 * 1024
        assert FlashStage.WRITING not in result.stages
        assert result.verified is None

    def test_monitor_device(self, sync_config):
        """Monitoring collects the boot log."""
        events = []
        result = monitor_device(sync_config, on_event=events.append, duration=0.3, transport=fresh_transport())
        assert result.ok
        assert any("Ready for operation" in line for line in result.lines)
        assert any(e.source == "monitor" for e in events)

    def test_monitor_interrupted_keeps_lines(self, sync_config, monkeypatch):
        """Ctrl-C ends an open-ended monitor with the captured history intact."""
        async def interrupted():
            await asyncio.sleep(0.3)
            raise asyncio.CancelledError

        monkeypatch.setattr(actions, "wait_for_interrupt", interrupted)
        result = monitor_device(sync_config, transport=fresh_transport())
        assert result.ok
        assert any("Ready for operation" in line for line in result.lines)

    def test_monitor_raw(self, sync_config):
        """Raw mode reports hex dump rows instead of decoded lines."""
        result = monitor_device(sync_config, duration=0.3, raw=True, transport=fresh_transport())
        monitor_lines = [line for line in result.lines if "|" in line]
        assert monitor_lines
        assert not any("Ready for operation" in line for line in result.lines)


class TestMessages:
    """Errors map to stable warning codes."""

    def test_codes(self):
        """Each error type has its own code."""
        assert code_for_error(HandshakeTimeout("x")) == WarningCode.W_HANDSHAKE_FAILED
        assert code_for_error(WriteError("x", 0)) == WarningCode.W_WRITE_FAILED
        assert code_for_error(WritePermissionError("Confirmation token mismatch")) == WarningCode.W_CONFIRMATION_REQUIRED
        assert code_for_error(RuntimeError("?")) == WarningCode.W_UNKNOWN

    def test_warning_for_error(self):
        """Errors become ERROR-level items with a remediation hint."""
        item = warning_for_error(HandshakeTimeout("Device did not enter programming mode"))
        assert item.level == MessageLevel.ERROR
        assert "BOOT" in item.remediation
        assert item.to_dict()["code"] == "W_HANDSHAKE_FAILED"

    def test_result_summary(self):
        """Summaries list stages and errors."""
        result = OperationResult.failure("flash_firmware", "Erase failed at 0x00000000: flash write error")
        result.stages.extend([FlashStage.CONNECTING, FlashStage.ERASING, FlashStage.ERROR])
        summary = result.to_summary()
        assert summary.startswith("[FAILED] flash_firmware")
        assert "connecting -> erasing -> error" in summary
        assert [w.code for w in result_to_warnings(result)] == [WarningCode.W_ERASE_FAILED]
