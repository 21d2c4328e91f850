"""Per-servo register cache with typed accessors.

Each Device mirrors one servo on a DynamixelNetwork. Register reads and
writes go through a cache whose policy depends on the register:

- Volatile registers (live position, speed, load, ...) are read from the
  servo every time and never cached.
- Read-only registers cannot be written.
- Goal position and moving speed are seeded when the Device is created and
  then only ever change through this Device. In synchronized mode, writes
  to them are held in the cache until the network's next synchronize().
- Other registers are fetched once, and written only when the value changes.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from .constants import DEFAULT_ADDRESS, RESET_RECOVERY_DELAY
from .protocol import ReadOnlyRegisterError
from .registers import (
    SYNCHRONIZED_REGISTERS,
    BaudRate,
    ErrorStatus,
    Register,
    StatusReturnLevel,
    get_all_registers,
    get_register_info,
)

if TYPE_CHECKING:
    from .network import DynamixelNetwork

logger = logging.getLogger(__name__)

_FIRST_REGISTER = Register.MODEL_NUMBER
_LAST_REGISTER = Register.PUNCH


def _signed(value: int) -> int:
    """Decode a speed/load value where bit 10 gives the direction."""
    if value & 0x400:
        return -(value & 0x3FF)
    return value


def _register_property(register: Register, doc: str, readonly: bool = False):
    """Build a plain integer property backed by ``register``."""

    def fget(self: Device) -> int:
        return self.get_register(register)

    def fset(self: Device, value: int) -> None:
        self.set_register(register, value)

    return property(fget, None if readonly else fset, doc=doc)


class Device:
    """One servo on a Dynamixel network.

    Created by DynamixelNetwork.scan(). After a rescan the old Device
    objects are no longer attached to the network and must not be used.

    Attributes:
        synchronized: If True (default), goal position and moving speed
            writes wait for DynamixelNetwork.synchronize()
        dirty: True while a synchronized goal/speed write is unsent
    """

    def __init__(self, address: int, network: DynamixelNetwork):
        """Create the Device and seed goal position and moving speed.

        Args:
            address: Servo address (0-253)
            network: Owning network

        Raises:
            TimeoutError: If the servo does not answer the seeding read
        """
        self._address = address
        self._network = network
        self._cache: dict[Register, int] = {}
        self.synchronized = True
        self.dirty = False

        # These two are never read back from the servo after this
        goal, speed = network.protocol.read_registers(
            address, Register.GOAL_POSITION, Register.MOVING_SPEED
        )
        self._cache[Register.GOAL_POSITION] = goal
        self._cache[Register.MOVING_SPEED] = speed

    def __repr__(self) -> str:
        return f"Device(address={self._address})"

    def __str__(self) -> str:
        return f"Dyn {self._address}"

    # =========================================================================
    # Raw cache access
    # =========================================================================

    def __getitem__(self, register: Register) -> int | None:
        """Cached value of ``register``, or None if unknown. No bus traffic."""
        return self._cache.get(Register(register))

    def __setitem__(self, register: Register, value: int) -> None:
        """Overwrite the cached value of ``register``. No bus traffic."""
        self._cache[Register(register)] = value

    def invalidate(self, register: Register | None = None) -> None:
        """Forget one cached register, or every register except goal/speed.

        Goal position and moving speed are only known from the cache, so
        they are never forgotten.
        """
        if register is not None:
            if Register(register) not in SYNCHRONIZED_REGISTERS:
                self._cache.pop(Register(register), None)
            return
        for cached in list(self._cache):
            if cached not in SYNCHRONIZED_REGISTERS:
                del self._cache[cached]

    # =========================================================================
    # Register access policy
    # =========================================================================

    def get_register(self, register: Register) -> int:
        """Read a register, from the cache where the policy allows.

        Raises:
            TimeoutError: If a bus read was needed and timed out
        """
        info = get_register_info(register)
        reg = info.register

        if reg in SYNCHRONIZED_REGISTERS:
            return self._cache[reg]

        protocol = self._network.protocol
        if info.volatile:
            return protocol.read_register(self._address, reg)

        value = self._cache.get(reg)
        if value is None:
            value = self._cache[reg] = protocol.read_register(self._address, reg)
        return value

    def set_register(self, register: Register, value: int) -> None:
        """Write a register, sending it to the servo when the policy requires.

        Raises:
            ReadOnlyRegisterError: If the register is read-only
            ValueError: If the value does not fit the register
            TimeoutError: If the write is not acknowledged
        """
        info = get_register_info(register)
        reg = info.register

        if reg in SYNCHRONIZED_REGISTERS and self.synchronized:
            if not 0 <= value <= info.max_value:
                raise ValueError(
                    f"Value {value} out of range [0-{info.max_value}] for {reg.name}"
                )
            self._cache[reg] = value
            self.dirty = True
            return

        if info.readonly:
            raise ReadOnlyRegisterError(f"Register {reg.name} is read-only")

        protocol = self._network.protocol
        if info.volatile:
            protocol.write_register(self._address, reg, value)
            return

        if self._cache.get(reg) == value:
            return
        protocol.write_register(self._address, reg, value)
        self._cache[reg] = value

    def read_all(self) -> None:
        """Refresh the whole cache with one read of the control table."""
        values = self._network.protocol.read_registers(
            self._address, _FIRST_REGISTER, _LAST_REGISTER
        )
        for info, value in zip(get_all_registers(), values, strict=True):
            self._cache[info.register] = value

    def reset(self) -> None:
        """Restore the servo's factory defaults.

        The servo comes back at address 1, so the Device is moved there
        first; this fails if another Device already uses address 1.

        Raises:
            AddressCollisionError: If address 1 is held by another Device
        """
        old_address = self._address
        self._network.rekey(self, DEFAULT_ADDRESS)
        try:
            self._network.protocol.reset(old_address)
        except BaseException:
            self._network.rekey(self, old_address, current=DEFAULT_ADDRESS)
            raise
        self._address = DEFAULT_ADDRESS
        # Give the servo time to come back before reading its table
        time.sleep(RESET_RECOVERY_DELAY)
        self.read_all()

    def stop(self) -> None:
        """Hold the current position at the slowest non-zero speed.

        Speed 0 means "maximum speed" to the servo, so 1 is the slowest
        available; the servo may coast briefly.
        """
        self.goal_position = self.current_position
        self.moving_speed = 1

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def address(self) -> int:
        """The servo's bus address (ID register)."""
        return self._address

    @address.setter
    def address(self, value: int) -> None:
        self._network.set_address(self, value)

    def _set_address(self, value: int) -> None:
        # Only DynamixelNetwork.set_address calls this, after the map moved
        self._address = value
        self._cache[Register.ID] = value

    model_number = _register_property(
        Register.MODEL_NUMBER, "The model number [0-1]", readonly=True
    )
    firmware_version = _register_property(
        Register.FIRMWARE_VERSION, "The firmware version [2]", readonly=True
    )

    # =========================================================================
    # Motion
    # =========================================================================

    goal_position = _register_property(
        Register.GOAL_POSITION, "The goal position [30-31]"
    )
    moving_speed = _register_property(Register.MOVING_SPEED, "The moving speed [32-33]")

    @property
    def current_position(self) -> int:
        """The current position [36-37]."""
        return self.get_register(Register.CURRENT_POSITION)

    @property
    def current_speed(self) -> int:
        """The current speed [38-39], negative when turning clockwise."""
        return _signed(self.get_register(Register.CURRENT_SPEED))

    @property
    def current_load(self) -> int:
        """The current torque load [40-41], negative when clockwise."""
        return _signed(self.get_register(Register.CURRENT_LOAD))

    @property
    def moving(self) -> bool:
        """True while moving or while a synchronized move is still unsent [46]."""
        return self.dirty or self.get_register(Register.MOVING) != 0

    @property
    def torque_enable(self) -> bool:
        return self.get_register(Register.TORQUE_ENABLE) != 0

    @torque_enable.setter
    def torque_enable(self, value: bool) -> None:
        self.set_register(Register.TORQUE_ENABLE, int(bool(value)))

    @property
    def registered_instruction(self) -> bool:
        """Whether a RegWrite is waiting for an Action [44]."""
        return self.get_register(Register.REGISTERED_INSTRUCTION) != 0

    @registered_instruction.setter
    def registered_instruction(self, value: bool) -> None:
        self.set_register(Register.REGISTERED_INSTRUCTION, int(bool(value)))

    # =========================================================================
    # Health
    # =========================================================================

    @property
    def current_temperature(self) -> int:
        """The current temperature in degrees Celsius [43]."""
        return self.get_register(Register.CURRENT_TEMPERATURE)

    @property
    def current_voltage(self) -> float:
        """The current supply voltage in volts [42]."""
        return self.get_register(Register.CURRENT_VOLTAGE) / 10.0

    @property
    def high_voltage_limit(self) -> float:
        """The high voltage limit in volts [13]."""
        return self.get_register(Register.HIGH_VOLTAGE_LIMIT) / 10.0

    @high_voltage_limit.setter
    def high_voltage_limit(self, value: float) -> None:
        self.set_register(Register.HIGH_VOLTAGE_LIMIT, round(value * 10.0))

    @property
    def low_voltage_limit(self) -> float:
        """The low voltage limit in volts [12]."""
        return self.get_register(Register.LOW_VOLTAGE_LIMIT) / 10.0

    @low_voltage_limit.setter
    def low_voltage_limit(self, value: float) -> None:
        self.set_register(Register.LOW_VOLTAGE_LIMIT, round(value * 10.0))

    temperature_limit = _register_property(
        Register.TEMPERATURE_LIMIT, "The temperature limit [11]"
    )

    @property
    def alarm_led(self) -> ErrorStatus:
        """Error conditions that light the LED [17]."""
        return ErrorStatus(self.get_register(Register.ALARM_LED))

    @alarm_led.setter
    def alarm_led(self, value: ErrorStatus) -> None:
        self.set_register(Register.ALARM_LED, int(value))

    @property
    def alarm_shutdown(self) -> ErrorStatus:
        """Error conditions that shut the servo down [18]."""
        return ErrorStatus(self.get_register(Register.ALARM_SHUTDOWN))

    @alarm_shutdown.setter
    def alarm_shutdown(self, value: ErrorStatus) -> None:
        self.set_register(Register.ALARM_SHUTDOWN, int(value))

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def baud_rate(self) -> BaudRate:
        return BaudRate(self.get_register(Register.BAUD_RATE))

    @baud_rate.setter
    def baud_rate(self, value: BaudRate) -> None:
        self.set_register(Register.BAUD_RATE, int(value))

    @property
    def return_delay(self) -> int:
        """The return delay in microseconds [5]."""
        return self.get_register(Register.RETURN_DELAY) * 2

    @return_delay.setter
    def return_delay(self, value: int) -> None:
        self.set_register(Register.RETURN_DELAY, value // 2)

    @property
    def status_return_level(self) -> StatusReturnLevel:
        return StatusReturnLevel(self.get_register(Register.STATUS_RETURN_LEVEL))

    @status_return_level.setter
    def status_return_level(self, value: StatusReturnLevel) -> None:
        self.set_register(Register.STATUS_RETURN_LEVEL, int(value))

    @property
    def led(self) -> bool:
        return self.get_register(Register.LED) != 0

    @led.setter
    def led(self, value: bool) -> None:
        self.set_register(Register.LED, int(bool(value)))

    @property
    def lock(self) -> bool:
        """Whether the EEPROM area is locked [47]."""
        return self.get_register(Register.LOCK) != 0

    cw_angle_limit = _register_property(
        Register.CW_ANGLE_LIMIT, "The CW (toward 0) angle limit [6-7]"
    )
    ccw_angle_limit = _register_property(
        Register.CCW_ANGLE_LIMIT, "The CCW (toward 1023) angle limit [8-9]"
    )
    max_torque = _register_property(Register.MAX_TORQUE, "The maximum torque [14-15]")
    torque_limit = _register_property(
        Register.TORQUE_LIMIT, "The torque limit [34-35]"
    )
    punch = _register_property(Register.PUNCH, "The punch value [48-49]")
    cw_compliance_margin = _register_property(
        Register.CW_COMPLIANCE_MARGIN, "The CW compliance margin [26]"
    )
    ccw_compliance_margin = _register_property(
        Register.CCW_COMPLIANCE_MARGIN, "The CCW compliance margin [27]"
    )
    cw_compliance_slope = _register_property(
        Register.CW_COMPLIANCE_SLOPE, "The CW compliance slope [28]"
    )
    ccw_compliance_slope = _register_property(
        Register.CCW_COMPLIANCE_SLOPE, "The CCW compliance slope [29]"
    )
