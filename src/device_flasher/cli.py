"""
Device Flasher CLI

Command-line interface for flashing, erasing and monitoring ESP32-family
boards, with write gating and a simulated device.
"""

import os
import sys
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from device_flasher.config import ConnectionConfig, DEFAULT_BAUDRATE
from device_flasher.errors import FlasherError
from device_flasher.firmware import FirmwareImage, FirmwareImageError
from device_flasher.protocol.transport import list_ports, probe_transport, serial

# Import from core module for unified logic
from device_flasher.core.parsing import (
    parse_size_bytes as _parse_size_core,
    format_size,
)
from device_flasher.core.safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
    load_allowlist,
)
from device_flasher.core.results import OperationResult
from device_flasher.core.events import LogEvent, Severity
from device_flasher.core.orchestrator import FlashUpdate
from device_flasher.core.monitor import default_log_filename
from device_flasher.core.actions import (
    read_device_info as core_read_device_info,
    flash_firmware as core_flash_firmware,
    erase_flash as core_erase_flash,
    monitor_device as core_monitor_device,
)
from device_flasher.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
    warning_for_error,
    TROUBLESHOOTING_TIPS,
)
from device_flasher.models import list_chips as registry_list_chips, get_chip, detect_chip

# Setup logging
rich_handler = RichHandler(rich_tracebacks=True)
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[rich_handler],
)
logger = logging.getLogger("device_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="🔧 Device Flasher - ESP32 firmware flashing and serial monitor")

PORT_ENV = "DEVICE_FLASHER_PORT"
BAUD_ENV = "DEVICE_FLASHER_BAUD"

SEVERITY_STYLES = {
    Severity.INFO: "white",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.SUCCESS: "green",
}


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style, markup=False)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation and (verbose or warning.level == MessageLevel.ERROR):
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_size_bytes that converts
    ValueError to typer.BadParameter.
    """
    if value is None:
        return None
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def setup_logging(verbose: bool, quiet: bool = False) -> None:
    """Debug output with --verbose; warnings only when stdout carries JSON."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logger.setLevel(level)
    rich_handler.setLevel(level)


def build_config(
    port: Optional[str],
    baud: int,
    timeout: float,
    simulate: bool,
) -> ConnectionConfig:
    """Build a ConnectionConfig, turning validation errors into BadParameter."""
    try:
        return ConnectionConfig(port=port, baudrate=baud, timeout=timeout, simulate=simulate)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def confirm_write_with_details(
    write_flag: bool,
    target_region: str,
    bytes_length: int,
    confirm_token: Optional[str] = None,
    simulate: bool = False,
    port: Optional[str] = None,
    announce: bool = True,
) -> SafetyContext:
    """
    Require explicit --write flag AND typed confirmation before any flash write.

    CLI-specific wrapper around core.safety.require_write_permission. Uses
    Rich for display and typer.prompt for input.

    Supports three modes:
    1. Simulated device: no gating
    2. Non-interactive (script): --confirm WRITE provided, no prompts
    3. Interactive (TTY): prompts user for typed confirmation

    Returns:
        SafetyContext to hand to the core action

    Raises:
        typer.Abort: If confirmation fails or write not permitted
    """
    if simulate:
        return create_cli_safety_context(write_enabled=True, simulate=True)

    if confirm_token is not None:
        ctx = SafetyContext(
            write_enabled=write_flag,
            confirmation_token=confirm_token,
            interactive=False,
        )
        try:
            require_write_permission(ctx, target_region=target_region, bytes_length=bytes_length)
        except WritePermissionError as e:
            if "token mismatch" in str(e).lower():
                print_error(f"Confirmation token mismatch. Expected: --confirm {CONFIRMATION_TOKEN}")
            else:
                print_error(str(e))
            raise typer.Abort()
        if announce:
            print_success("Non-interactive confirmation accepted. Proceeding with write...")
        return create_cli_safety_context(write_enabled=True)

    if not write_flag:
        console.print()
        print_error("Write operation requires --write flag.")
        console.print("This is a safety measure to prevent accidentally overwriting a device.")
        console.print(f"  Target:        {target_region}")
        if bytes_length:
            console.print(f"  Bytes:         {bytes_length:,}")
        raise typer.Abort()

    if not sys.stdin.isatty():
        console.print()
        print_error("Non-interactive environment detected but no confirmation token provided.")
        console.print()
        console.print("[bold]For scripted/non-interactive use, provide:[/bold]")
        console.print(f"  --write --confirm {CONFIRMATION_TOKEN}")
        console.print()
        console.print("[bold]Example:[/bold]")
        console.print(f"  device-flasher flash firmware.bin --port {port or '/dev/ttyUSB0'} --write --confirm {CONFIRMATION_TOKEN}")
        raise typer.Abort()

    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Port:          {port or 'auto'}\n"
            f"Target:        {details.get('target_region', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write Operation",
            expand=False,
        ))

    ctx = SafetyContext(
        write_enabled=write_flag,
        interactive=True,
        prompt_confirmation=lambda prompt_text: typer.prompt("Confirm"),
        show_details=show_details,
    )
    try:
        require_write_permission(ctx, target_region=target_region, bytes_length=bytes_length)
    except WritePermissionError as e:
        print_warning(str(e))
        raise typer.Abort()
    print_success("Confirmation accepted. Proceeding with write...")
    return create_cli_safety_context(write_enabled=True)


def print_device_table(result: OperationResult) -> None:
    device = result.device
    table = Table(title="Device Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Chip", device.chip_type)
    table.add_row("MAC Address", device.mac_address)
    table.add_row("Flash Size", format_size(device.flash_size))
    table.add_row("Port", device.port or "-")
    table.add_row("Transport", device.transport or "-")
    table.add_row("Verify Support", "Yes" if device.supports_verify else "No")

    profile = detect_chip(device.chip_type)
    if profile is not None:
        table.add_row("Architecture", profile.architecture)
        table.add_row("Bootloader Offset", f"0x{profile.bootloader_offset:X}")
    console.print(table)


def print_event(event: LogEvent) -> None:
    style = SEVERITY_STYLES.get(event.severity, "white")
    console.print(event.format(), style=style, markup=False, highlight=False)


def run_session_with_progress(action, description: str):
    """Run a flash/erase action while drawing a Rich progress bar."""
    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=100)

        def on_update(update: FlashUpdate) -> None:
            progress.update(task, completed=update.progress, description=update.stage.value)

        return action(on_update)


def finish(result: OperationResult, verbose: bool, output_json: bool = False) -> None:
    """Print result warnings and exit non-zero on failure."""
    if output_json:
        data = result.to_dict()
        data["diagnostics"] = [w.to_dict() for w in result_to_warnings(result)]
        console.print_json(json.dumps(data))
        if not result.ok:
            sys.exit(1)
        return
    print_warnings_from_result(result, verbose=verbose)
    if verbose:
        for line in result.logs:
            console.print(f"[dim]{line}[/dim]", markup=False)
    if not result.ok:
        sys.exit(1)


# ============================================================================
# Commands
# ============================================================================

PortOption = typer.Option(None, "--port", "-p", envvar=PORT_ENV, help="Serial port (e.g., /dev/ttyUSB0, COM3)")
BaudOption = typer.Option(DEFAULT_BAUDRATE, "--baud", "-b", envvar=BAUD_ENV, help="Baud rate")
TimeoutOption = typer.Option(0.5, "--timeout", help="Handshake timeout per attempt (seconds)")
SimulateOption = typer.Option(False, "--simulate", help="Use the simulated device")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Show debug logs and remediation hints")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    if serial is None:
        print_error("pyserial not installed: pip install pyserial")
        return

    ports_list = list_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("USB ID", style="magenta")
    table.add_column("Bridge", style="yellow")

    for port in ports_list:
        table.add_row(port.device, port.description or "-", port.usb_id, port.bridge or "-")

    console.print(table)


@app.command("list-chips")
def list_chips() -> None:
    """List supported chips and their defaults."""
    print_header("Supported Chips")

    table = Table(title="Chip Registry")
    table.add_column("Chip", style="cyan")
    table.add_column("Architecture", style="green")
    table.add_column("Flash Sizes", style="yellow")
    table.add_column("Bootloader", style="magenta")
    table.add_column("Native USB", style="blue")

    for name in registry_list_chips():
        profile = get_chip(name)
        table.add_row(
            profile.name,
            profile.architecture,
            ", ".join(format_size(s) for s in profile.flash_sizes),
            f"0x{profile.bootloader_offset:X}",
            "Yes" if profile.usb_native else "No",
        )

    console.print(table)


@app.command()
def info(
    port: Optional[str] = PortOption,
    baud: int = BaudOption,
    timeout: float = TimeoutOption,
    simulate: bool = SimulateOption,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
    verbose: bool = VerboseOption,
) -> None:
    """Connect to a device and show chip, MAC address and flash size."""
    setup_logging(verbose, quiet=output_json)
    config = build_config(port, baud, timeout, simulate)
    if not output_json:
        print_header("Device Information")

    result = core_read_device_info(config)
    if result.ok and not output_json:
        print_device_table(result)
    finish(result, verbose, output_json)


@app.command()
def diagnose(
    port: Optional[str] = PortOption,
    baud: int = BaudOption,
    timeout: float = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Check the serial setup step by step and suggest fixes."""
    setup_logging(verbose)
    print_header("Connection Diagnostics")
    config = build_config(port, baud, timeout, simulate=False)
    problems = 0

    if serial is None:
        print_error("pyserial is not installed (pip install pyserial)")
        problems += 1
    else:
        print_success("pyserial available")

    found = list_ports()
    bridges = [p for p in found if p.bridge]
    if not found:
        print_warning("No serial ports found")
        problems += 1
    else:
        print_success(f"{len(found)} serial port(s) found, {len(bridges)} known USB bridge(s)")
        for p in bridges:
            console.print(f"   {p.device}: {p.bridge} ({p.usb_id})")

    if port:
        if not os.path.exists(port) and not port.upper().startswith("COM"):
            print_error(f"{port} does not exist")
            problems += 1
        elif os.path.exists(port) and not os.access(port, os.R_OK | os.W_OK):
            print_error(f"No read/write permission for {port}")
            problems += 1
        else:
            print_success(f"{port} is accessible")

    probe = probe_transport(config)
    if probe.simulated:
        print_warning(f"Serial channel unavailable: {probe.reason}")
    elif port:
        console.print(f"Trying handshake on {port} at {baud} bps...")
        result = core_read_device_info(ConnectionConfig(
            port=port, baudrate=baud, timeout=timeout, allow_simulation_fallback=False,
        ))
        if result.ok:
            print_device_table(result)
        else:
            problems += 1
            print_warnings_from_result(result, verbose=True)

    if problems == 0:
        print_success("No problems found")
        return

    console.print()
    table = Table(title="Troubleshooting")
    table.add_column("Check", style="cyan")
    table.add_column("What to do", style="white")
    for title, tip in TROUBLESHOOTING_TIPS:
        table.add_row(title, tip)
    console.print(table)
    sys.exit(1)


@app.command()
def flash(
    firmware: str = typer.Argument(..., help="Firmware image (.bin)"),
    port: Optional[str] = PortOption,
    baud: int = BaudOption,
    timeout: float = TimeoutOption,
    simulate: bool = SimulateOption,
    max_size: Optional[str] = typer.Option(None, "--max-size", help="Reject images larger than this (e.g. 4MB)"),
    allow: Optional[str] = typer.Option(None, "--allow", help="File of permitted MAC addresses, one per line"),
    write: bool = typer.Option(False, "--write", help="Required flag to enable actual write to the device"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
    output_json: bool = typer.Option(False, "--json", "-j", help="Print the result as JSON"),
    verbose: bool = VerboseOption,
) -> None:
    """
    Flash a firmware image: enter bootloader → erase → write → verify → reset.
    """
    setup_logging(verbose, quiet=output_json)
    if not output_json:
        print_header("Flash Firmware")

    try:
        image = FirmwareImage.from_file(firmware, max_size=parse_size(max_size))
    except FirmwareImageError as e:
        print_error(str(e))
        sys.exit(1)

    permission_check = None
    if allow:
        try:
            permission_check = load_allowlist(allow)
        except (OSError, ValueError) as e:
            print_error(f"Cannot read allowlist {allow}: {e}")
            sys.exit(1)

    config = build_config(port, baud, timeout, simulate)
    if not output_json:
        console.print(f"Port: {port or 'auto'}")
        console.print(f"Firmware: {image.name} ({image.length:,} bytes)")
        console.print(f"SHA-256: {image.sha256}")

    safety_ctx = confirm_write_with_details(
        write,
        target_region=f"0x000000-0x{image.length:06X}",
        bytes_length=image.length,
        confirm_token=confirm,
        simulate=simulate,
        port=port,
        announce=not output_json,
    )

    def action(cb=None):
        return core_flash_firmware(config, image, safety_ctx, progress_cb=cb, permission_check=permission_check)

    if output_json:
        finish(action(), verbose, output_json=True)
        return

    result = run_session_with_progress(action, "Flashing")
    if result.ok:
        print_success(f"Flashed {result.bytes_len:,} bytes to {result.chip} on {result.port}")
        console.print(f"[dim]{' → '.join(stage.value for stage in result.stages)}[/dim]")
        if result.verified:
            print_success(f"Verified (sha256 {result.sha256[:16]}...)")
    else:
        print_error("Flash failed")
    finish(result, verbose)


@app.command()
def erase(
    port: Optional[str] = PortOption,
    baud: int = BaudOption,
    timeout: float = TimeoutOption,
    simulate: bool = SimulateOption,
    write: bool = typer.Option(False, "--write", help="Required flag to enable erasing the device"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Non-interactive confirmation token ('WRITE')"),
    verbose: bool = VerboseOption,
) -> None:
    """Erase the entire flash."""
    setup_logging(verbose)
    print_header("Erase Flash")
    config = build_config(port, baud, timeout, simulate)

    safety_ctx = confirm_write_with_details(
        write,
        target_region="entire flash",
        bytes_length=0,
        confirm_token=confirm,
        simulate=simulate,
        port=port,
    )

    result = run_session_with_progress(
        lambda cb: core_erase_flash(config, safety_ctx, progress_cb=cb),
        "Erasing",
    )
    if result.ok:
        print_success(f"Erased {format_size(result.bytes_len)} on {result.chip}")
    else:
        print_error("Erase failed")
    finish(result, verbose)


@app.command()
def monitor(
    port: Optional[str] = PortOption,
    baud: int = BaudOption,
    timeout: float = TimeoutOption,
    simulate: bool = SimulateOption,
    duration: Optional[float] = typer.Option(None, "--duration", "-d", help="Stop after N seconds (default: Ctrl-C)"),
    save: Optional[str] = typer.Option(
        None,
        "--save",
        help=f"Save the log to this file or directory (file name defaults to {default_log_filename()})",
    ),
    raw: bool = typer.Option(False, "--raw", help="Show undecoded output as a hex dump"),
    verbose: bool = VerboseOption,
) -> None:
    """Stream device output with error/warning highlighting."""
    setup_logging(verbose)
    print_header("Serial Monitor")
    config = build_config(port, baud, timeout, simulate)
    console.print("[dim]Press Ctrl-C to stop[/dim]" if duration is None else f"[dim]Monitoring for {duration:g}s[/dim]")

    result = core_monitor_device(config, on_event=print_event, duration=duration, raw=raw)

    if save and result.ok:
        target = Path(save)
        if target.is_dir():
            target = target / default_log_filename()
        target.write_text("\n".join(result.lines) + "\n", encoding="utf-8")
        print_success(f"Log saved to {target}")
    finish(result, verbose)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except FlasherError as e:
        console.print()
        print_structured_warning(warning_for_error(e), verbose=True)
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
