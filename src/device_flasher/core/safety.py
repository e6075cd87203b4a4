"""
Write gating and device permission checks.

Every operation that writes or erases flash goes through
require_write_permission() first. A flash additionally consults the
controller's permission hook; allowlist_permission() builds one from a set
of permitted MAC addresses.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from ..errors import FlasherError
from .parsing import normalize_mac

logger = logging.getLogger(__name__)

CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(FlasherError):
    """Raised when a write/erase is attempted without the required gating."""


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a write may proceed.

    Attributes:
        write_enabled: The user passed --write
        confirmation_token: Token for non-interactive confirmation (must be WRITE)
        interactive: Prompt for confirmation instead of using a token
        chip_detected: Chip type reported by the device, if known
        simulate: Simulated device; no real flash is touched
        prompt_confirmation: Callable that returns the typed confirmation
        show_details: Callable that displays what is about to be written
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = False
    chip_detected: Optional[str] = None
    simulate: bool = False
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None


def require_write_permission(
    ctx: SafetyContext,
    target_region: str,
    bytes_length: int,
    offset: Optional[int] = None,
) -> None:
    """
    Gate a write or erase.

    Simulated targets always pass. Otherwise --write must be set and the
    operation confirmed, either by token or by an interactive prompt.

    Raises:
        WritePermissionError: If any gate fails
    """
    if ctx.simulate:
        logger.debug("Simulated device: write gating skipped")
        return

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission (--write)"
        )

    details = {
        "chip": ctx.chip_detected or "Unknown",
        "target_region": target_region,
        "bytes_length": bytes_length,
        "offset": f"0x{offset:06X}" if offset is not None else "",
    }

    if not ctx.interactive:
        token = (ctx.confirmation_token or "").strip().upper()
        if token != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch: expected '{CONFIRMATION_TOKEN}'"
            )
        return

    if ctx.show_details is not None:
        ctx.show_details(details)
    if ctx.prompt_confirmation is None:
        raise WritePermissionError("Interactive confirmation unavailable")
    answer = ctx.prompt_confirmation(f"Type '{CONFIRMATION_TOKEN}' to proceed")
    if (answer or "").strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError("Write cancelled by user")


def allowlist_permission(macs: Iterable[str]) -> Callable:
    """
    Build a permission hook that only allows the given MAC addresses.

    Raises:
        ValueError: If any entry is not a MAC address
    """
    allowed = {normalize_mac(mac) for mac in macs}

    def check(info) -> bool:
        permitted = normalize_mac(info.mac_address) in allowed
        if not permitted:
            logger.warning(f"Device {info.mac_address} is not in the allowlist")
        return permitted

    return check


def load_allowlist(path: Union[str, Path]) -> Callable:
    """Permission hook from a file with one MAC per line (# comments allowed)."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    macs = [line.split("#", 1)[0].strip() for line in lines]
    return allowlist_permission(mac for mac in macs if mac)


def create_cli_safety_context(write_enabled: bool, simulate: bool = False, chip: Optional[str] = None) -> SafetyContext:
    """
    Safety context for a CLI command that has already confirmed with the user.

    The confirmation happened at the prompt (or via --confirm), so the
    context carries the token and never prompts again.
    """
    return SafetyContext(
        write_enabled=write_enabled,
        confirmation_token=CONFIRMATION_TOKEN if write_enabled else None,
        interactive=False,
        chip_detected=chip,
        simulate=simulate,
    )
