"""
Result objects for the CLI workflows.

An OperationResult is what a finished info/flash/erase/monitor run leaves
behind: the device it talked to, the stages its session went through, the
terminal update, and the log lines captured on the way.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .device import DeviceInfo
from .orchestrator import FlashStage, FlashUpdate


@dataclass
class OperationResult:
    """
    Outcome of one workflow.

    Attributes:
        ok: False once any error is recorded
        operation: "read_device_info", "flash_firmware", "erase_flash" or "monitor_device"
        port: Requested port (or the opened handle name once connected)
        device: Identity read at connect, None if the device never answered
        bytes_len: Image length for flashes, flash size for erases
        sha256: Firmware digest (flashes only)
        stages: Distinct stages in the order the session entered them
        final: Terminal COMPLETE/ERROR update of the session
        verified: True when the device confirmed the digest, False when
                  verification was skipped, None when no flash ran
        lines: Exported monitor history (monitor only)
        warnings: Non-blocking issues
        errors: Blocking errors
        logs: Captured log lines
    """
    ok: bool
    operation: str
    port: str = ""
    device: Optional[DeviceInfo] = None
    bytes_len: int = 0
    sha256: str = ""
    stages: List[FlashStage] = field(default_factory=list)
    final: Optional[FlashUpdate] = None
    verified: Optional[bool] = None
    lines: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def chip(self) -> str:
        return self.device.chip_type if self.device is not None else ""

    @property
    def simulated(self) -> bool:
        return self.device is not None and self.device.transport == "simulated"

    @property
    def message(self) -> str:
        return self.final.message if self.final is not None else ""

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def attach_device(self, info: DeviceInfo) -> None:
        self.device = info
        self.port = info.port
        if self.simulated:
            self.add_warning("Simulated device - no real hardware was touched")

    def record(self, update: FlashUpdate) -> None:
        """Track one session update; the terminal one becomes final."""
        if not self.stages or self.stages[-1] != update.stage:
            self.stages.append(update.stage)
        if update.stage.terminal:
            self.final = update

    def finish(self) -> None:
        """Close the result; a session that did not COMPLETE is an error."""
        self.finished_at = time.time()
        if self.stages and (self.final is None or self.final.stage != FlashStage.COMPLETE):
            self.add_error(self.message or "Session ended without a result")

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def to_summary(self) -> str:
        """Human-readable summary for CLI output."""
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device is not None:
            lines.append(f"  Device: {self.device.chip_type} ({self.device.mac_address})")
        if self.port:
            lines.append(f"  Port: {self.port}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")
        if self.sha256:
            lines.append(f"  sha256: {self.sha256[:16]}...")
        if self.stages:
            lines.append(f"  Stages: {' -> '.join(stage.value for stage in self.stages)}")
        if self.verified is not None:
            lines.append(f"  Verified: {'yes' if self.verified else 'skipped'}")
        if self.finished_at is not None:
            lines.append(f"  Elapsed: {self.elapsed:.1f}s")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "port": self.port,
            "device": self.device.to_dict() if self.device is not None else None,
            "simulated": self.simulated,
            "bytes_len": self.bytes_len,
            "sha256": self.sha256,
            "stages": [stage.value for stage in self.stages],
            "message": self.message,
            "verified": self.verified,
            "elapsed": round(self.elapsed, 3),
            "lines": self.lines,
            "warnings": self.warnings,
            "errors": self.errors,
            "logs": self.logs,
        }

    @classmethod
    def failure(cls, operation: str, error: str, **kwargs) -> "OperationResult":
        result = cls(ok=False, operation=operation, **kwargs)
        result.errors.append(error)
        result.finished_at = time.time()
        return result
