"""Top level API.

This package provides a host-side driver for Dynamixel AX-12 servo buses:

- DynamixelTransport: Serial (or simulated) byte stream
- DynamixelProtocol: Command/status packets, register access, SyncWrite
- Device: Per-servo register cache
- DynamixelNetwork: Discovery, synchronized motion, stop and renaming
- DynamixelController: FastCS controller exposing the bus as EPICS PVs

Example usage::

    from fastcs_dynamixel import DynamixelNetwork, DynamixelProtocol
    from fastcs_dynamixel import DynamixelTransport

    with DynamixelTransport("/dev/ttyUSB0") as transport:
        network = DynamixelNetwork(DynamixelProtocol(transport))
        for device in network.scan(1, 10):
            device.goal_position = 512
        network.synchronize()

.. data:: __version__
    :type: str

    Version number as calculated by https://github.com/pypa/setuptools_scm
"""

from ._version import __version__
from .controller import DynamixelController, ServoController
from .device import Device
from .handshake import HandshakeError, enter_toss_mode
from .network import DynamixelNetwork
from .protocol import (
    AddressCollisionError,
    AddressError,
    DynamixelProtocol,
    PingResult,
    ProtocolError,
    ProtocolStatistics,
    ReadOnlyRegisterError,
    RegisterError,
    SyncWriteError,
)
from .register_io import DynamixelRegisterIO, DynamixelRegisterIORef
from .registers import (
    BaudRate,
    ErrorStatus,
    Register,
    RegisterInfo,
    RegisterType,
    StatusReturnLevel,
    get_all_registers,
    get_register_info,
    is_readonly_register,
    is_volatile_register,
)
from .simulator import DynamixelSimulator, SimulatedStream
from .transport import ByteStream, DynamixelTransport, EchoTransport

__all__ = [
    "__version__",
    # Transport and Protocol
    "ByteStream",
    "DynamixelTransport",
    "EchoTransport",
    "DynamixelProtocol",
    "PingResult",
    "ProtocolStatistics",
    "ProtocolError",
    "RegisterError",
    "ReadOnlyRegisterError",
    "SyncWriteError",
    "AddressError",
    "AddressCollisionError",
    # Devices and network
    "Device",
    "DynamixelNetwork",
    "HandshakeError",
    "enter_toss_mode",
    # Simulation
    "DynamixelSimulator",
    "SimulatedStream",
    # Controller
    "DynamixelController",
    "ServoController",
    "DynamixelRegisterIO",
    "DynamixelRegisterIORef",
    # Register definitions
    "Register",
    "RegisterInfo",
    "RegisterType",
    "ErrorStatus",
    "BaudRate",
    "StatusReturnLevel",
    "get_register_info",
    "get_all_registers",
    "is_readonly_register",
    "is_volatile_register",
]
