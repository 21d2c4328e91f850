"""Pytest configuration for fastcs-dynamixel tests."""

import pytest

from fastcs_dynamixel.network import DynamixelNetwork
from fastcs_dynamixel.protocol import DynamixelProtocol
from fastcs_dynamixel.simulator import DynamixelSimulator, SimulatedStream


def pytest_addoption(parser):
    """Add command line options for testing."""
    parser.addoption(
        "--port",
        action="store",
        default=None,
        help="Dynamixel serial port (e.g., /dev/ttyUSB0 or sim://1,2,3)",
    )


@pytest.fixture
def simulator():
    """Simulated bus with servos at addresses 1, 2 and 3."""
    return DynamixelSimulator(ids=(1, 2, 3))


@pytest.fixture
def stream(simulator):
    return SimulatedStream(simulator)


@pytest.fixture
def protocol(stream):
    return DynamixelProtocol(stream)


@pytest.fixture
def network(protocol):
    """Network that has already scanned the simulated bus."""
    network = DynamixelNetwork(protocol)
    network.scan(0, 10)
    return network
