"""Coordinator for all servos on one Dynamixel bus.

DynamixelNetwork owns the address -> Device map. It discovers servos,
renames them, stops them all at once and sends the goal position / moving
speed changes of every synchronized Device in a single SyncWrite packet.
"""

import logging
from collections.abc import Iterator

from .constants import BROADCAST_ID, MAX_ADDRESS, MIN_ADDRESS
from .device import Device
from .protocol import (
    AddressCollisionError,
    AddressError,
    DynamixelProtocol,
    ReadOnlyRegisterError,
)
from .registers import Register, get_register_info

logger = logging.getLogger(__name__)


class DynamixelNetwork:
    """The set of servos discovered on a bus.

    Example usage::

        network = DynamixelNetwork(DynamixelProtocol(transport))
        network.scan(1, 20)
        for device in network:
            device.goal_position = 512
        network.synchronize()
    """

    def __init__(self, protocol: DynamixelProtocol):
        """Initialize an empty network.

        Args:
            protocol: Packet protocol for the bus
        """
        self.protocol = protocol
        self._devices: dict[int, Device] = {}
        self._stopped = False

    # =========================================================================
    # Device map
    # =========================================================================

    @property
    def devices(self) -> list[Device]:
        """All known devices in ascending address order."""
        return [self._devices[address] for address in sorted(self._devices)]

    def get(self, address: int) -> Device | None:
        return self._devices.get(address)

    def __getitem__(self, address: int) -> Device:
        return self._devices[address]

    def __contains__(self, address: int) -> bool:
        return address in self._devices

    def __iter__(self) -> Iterator[Device]:
        return iter(self.devices)

    def __len__(self) -> int:
        return len(self._devices)

    def scan(self, low: int = MIN_ADDRESS, high: int = MAX_ADDRESS) -> list[Device]:
        """Discover the servos in ``low``..``high`` and replace the device map.

        Devices from an earlier scan are dropped, not updated.

        Returns:
            The new devices in ascending address order

        Raises:
            AddressError: Unless 0 <= low <= high <= 253
        """
        self._devices = {}
        for address in self.protocol.scan_ids(low, high):
            self._devices[address] = Device(address, self)
        return self.devices

    def rekey(
        self, device: Device, new_address: int, current: int | None = None
    ) -> None:
        """Move ``device`` to ``new_address`` in the map. No bus traffic.

        Args:
            device: The device to move
            new_address: Its new key
            current: The key it is held under now (default ``device.address``)

        Raises:
            AddressCollisionError: If a different device holds ``new_address``
        """
        if current is None:
            current = device.address
        other = self._devices.get(new_address)
        if other is not None and other is not device:
            raise AddressCollisionError(f"Servo address {new_address} already in use")
        if self._devices.get(current) is device:
            del self._devices[current]
        self._devices[new_address] = device

    def set_address(self, device: Device, new_address: int) -> None:
        """Change a servo's address on the bus and in the map.

        Raises:
            AddressError: If new_address is outside 0-253
            AddressCollisionError: If another device holds new_address
            TimeoutError: If the servo does not acknowledge the ID write
        """
        if not MIN_ADDRESS <= new_address <= MAX_ADDRESS:
            raise AddressError(
                f"Servo address {new_address} out of range "
                f"[{MIN_ADDRESS}-{MAX_ADDRESS}]"
            )
        old_address = device.address
        if new_address == old_address:
            return
        self.rekey(device, new_address)
        try:
            self.protocol.write_register(old_address, Register.ID, new_address)
        except BaseException:
            # The servo kept its old ID, so the map must too
            self.rekey(device, old_address, current=new_address)
            raise
        device._set_address(new_address)
        logger.info(f"Servo {old_address} renamed to {new_address}")

    # =========================================================================
    # Synchronized motion
    # =========================================================================

    @property
    def stopped(self) -> bool:
        """While True, synchronize() sends nothing."""
        return self._stopped

    @stopped.setter
    def stopped(self, value: bool) -> None:
        self.set_stopped(value)

    def set_stopped(self, value: bool) -> None:
        """Enter or leave the stopped state.

        Entering it stops every servo at its current position and sends
        those stop commands before further moves are suppressed.
        """
        if value:
            logger.info("Stopping all servos")
            for device in self.devices:
                device.stop()
            self.synchronize()
        self._stopped = value

    def synchronize(self) -> int:
        """Send all pending synchronized moves as one SyncWrite.

        Dirty flags are cleared even while stopped, when nothing is sent.

        Returns:
            Number of devices included in the SyncWrite
        """
        rows: list[int] = []
        count = 0
        for device in self.devices:
            if not device.dirty:
                continue
            if not self._stopped:
                goal = device.goal_position
                speed = device.moving_speed
                rows += [device.address, goal & 0xFF, goal >> 8]
                rows += [speed & 0xFF, speed >> 8]
                count += 1
            device.dirty = False

        if count:
            logger.debug(f"Synchronizing {count} servo(s)")
            self.protocol.sync_write(Register.GOAL_POSITION, count, rows)
        return count

    def broadcast_register(self, register: Register, value: int) -> None:
        """Set a register on every servo with a single broadcast write.

        Raises:
            ReadOnlyRegisterError: If the register is read-only
        """
        info = get_register_info(register)
        if info.readonly:
            raise ReadOnlyRegisterError(f"Register {info.register.name} is read-only")
        self.protocol.write_register(BROADCAST_ID, info.register, value)
        for device in self.devices:
            device[info.register] = value
