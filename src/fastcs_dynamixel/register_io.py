"""Dynamixel register I/O classes for FastCS attributes.

This module contains the AttributeIO classes that read and write servo
registers through the Device register cache. They are separated from the
main controller to avoid circular imports with the servo sub-controllers.
"""

import logging
from dataclasses import dataclass
from typing import TypeVar

from fastcs.attributes import AttributeIO, AttributeIORef, AttrRW

from .network import DynamixelNetwork
from .registers import Register

logger = logging.getLogger(__name__)

NumberT = TypeVar("NumberT", int, float, bool)


@dataclass
class DynamixelRegisterIORef(AttributeIORef):
    """Reference for a register on one servo.

    Attributes:
        address: Servo address on the bus (0-253)
        register: Control table offset
        update_period: Poll period in seconds (default 1.0)
        accessor: Name of a Device property that decodes the register
            (signed speed, volts, ...). Reads use it instead of the raw value.
    """

    address: int = 0
    register: int = 0
    update_period: float | None = 1.0
    accessor: str | None = None


class DynamixelRegisterIO(AttributeIO[NumberT, DynamixelRegisterIORef]):
    """Handles reading from and writing to servo registers.

    Reads and writes go through Device.get_register / Device.set_register,
    so the Device caching rules decide what reaches the bus. Goal position
    and moving speed writes only mark the device dirty; the controller's
    synchronize loop sends them.
    """

    def __init__(self, network: DynamixelNetwork | None = None):
        """Initialize register IO handler.

        Args:
            network: DynamixelNetwork instance (can be None until connected)
        """
        super().__init__()
        self._network = network

    def set_network(self, network: DynamixelNetwork | None) -> None:
        self._network = network

    async def update(self, attr):
        """Read the register through the device cache and update attribute.

        Args:
            attr: The attribute to update
        """
        device = self._network.get(attr.io_ref.address) if self._network else None
        if device is None:
            return

        try:
            if attr.io_ref.accessor:
                value = getattr(device, attr.io_ref.accessor)
            else:
                value = device.get_register(Register(attr.io_ref.register))
            await attr.update(attr.dtype(value))
        except Exception as e:
            logger.error(
                f"Error reading servo {attr.io_ref.address} "
                f"register {attr.io_ref.register}: {e}"
            )

    async def send(self, attr, value):
        """Write attribute value to the servo register.

        Args:
            attr: The attribute being written
            value: The value to write
        """
        device = self._network.get(attr.io_ref.address) if self._network else None
        if device is None:
            return

        try:
            device.set_register(Register(attr.io_ref.register), int(value))

            # Reflect what the device now holds
            if isinstance(attr, AttrRW):
                await self.update(attr)
        except Exception as e:
            logger.error(
                f"Error writing servo {attr.io_ref.address} "
                f"register {attr.io_ref.register}: {e}"
            )
