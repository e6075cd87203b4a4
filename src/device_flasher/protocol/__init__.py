"""Device protocol layer - transports, packet framing, and the bootloader driver."""

from .transport import (
    DeviceHandle,
    Transport,
    SerialTransport,
    SerialHandle,
    PortInfo,
    TransportProbe,
    list_ports,
    probe_transport,
    select_transport,
    identify_usb_bridge,
    KNOWN_USB_BRIDGES,
)
from .simulated import (
    SimulatedDevice,
    SimulatedHandle,
    SimulatedTransport,
    SimulationTiming,
    DeviceMode,
)
from .bootloader import (
    BootloaderDriver,
    ChipIdentity,
    compute_progress,
)
from .packets import (
    Packet,
    PacketParser,
    pack_packet,
    unpack_packet,
    crc16_ccitt,
)

__all__ = [
    # Transport
    "DeviceHandle",
    "Transport",
    "SerialTransport",
    "SerialHandle",
    "PortInfo",
    "TransportProbe",
    "list_ports",
    "probe_transport",
    "select_transport",
    "identify_usb_bridge",
    "KNOWN_USB_BRIDGES",
    # Simulation
    "SimulatedDevice",
    "SimulatedHandle",
    "SimulatedTransport",
    "SimulationTiming",
    "DeviceMode",
    # Bootloader
    "BootloaderDriver",
    "ChipIdentity",
    "compute_progress",
    # Framing
    "Packet",
    "PacketParser",
    "pack_packet",
    "unpack_packet",
    "crc16_ccitt",
]
