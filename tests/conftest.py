"""Shared fixtures: an instant simulated device and a controller wired to it."""

import pytest

from device_flasher.config import ConnectionConfig
from device_flasher.core.device import DeviceController
from device_flasher.protocol.simulated import (
    SimulatedDevice,
    SimulatedTransport,
    SimulationTiming,
)


@pytest.fixture
def sim_device():
    return SimulatedDevice(timing=SimulationTiming.instant())


@pytest.fixture
def sim_transport(sim_device):
    return SimulatedTransport(sim_device)


@pytest.fixture
def config():
    return ConnectionConfig(
        port="sim0",
        timeout=0.2,
        handshake_retries=3,
        settle_delay=0.01,
        simulate=True,
    )


@pytest.fixture
async def controller(sim_transport, config):
    device = DeviceController(transport=sim_transport)
    await device.connect(config)
    yield device
    await device.disconnect()
