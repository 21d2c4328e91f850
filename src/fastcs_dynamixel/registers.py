"""Dynamixel register definitions and error flag descriptions.

This module provides the static register table for AX/RX-series servos,
including:
- Register offsets in control table order
- Register width (1 or 2 bytes) and access class (RW, RO)
- Volatility (registers that must be re-read on every access)
- Error status flags with human-readable descriptions
- Baud rate and status return level settings

Reference: Dynamixel AX-12 user manual, control table section.
"""

import enum
from dataclasses import dataclass
from enum import Enum, auto


class RegisterType(Enum):
    """Register access classification.

    - RW: Read-Write register
    - RO: Read-Only register
    """

    RW = auto()  # Read-Write
    RO = auto()  # Read-Only


class Register(enum.IntEnum):
    """Offsets of the registers present on every servo."""

    MODEL_NUMBER = 0
    FIRMWARE_VERSION = 2
    ID = 3
    BAUD_RATE = 4
    RETURN_DELAY = 5
    CW_ANGLE_LIMIT = 6
    CCW_ANGLE_LIMIT = 8
    TEMPERATURE_LIMIT = 11
    LOW_VOLTAGE_LIMIT = 12
    HIGH_VOLTAGE_LIMIT = 13
    MAX_TORQUE = 14
    STATUS_RETURN_LEVEL = 16
    ALARM_LED = 17
    ALARM_SHUTDOWN = 18
    DOWN_CALIBRATION = 20
    UP_CALIBRATION = 22
    TORQUE_ENABLE = 24
    LED = 25
    CW_COMPLIANCE_MARGIN = 26
    CCW_COMPLIANCE_MARGIN = 27
    CW_COMPLIANCE_SLOPE = 28
    CCW_COMPLIANCE_SLOPE = 29
    GOAL_POSITION = 30
    MOVING_SPEED = 32
    TORQUE_LIMIT = 34
    CURRENT_POSITION = 36
    CURRENT_SPEED = 38
    CURRENT_LOAD = 40
    CURRENT_VOLTAGE = 42
    CURRENT_TEMPERATURE = 43
    REGISTERED_INSTRUCTION = 44
    MOVING = 46
    LOCK = 47
    PUNCH = 48


@dataclass(frozen=True)
class RegisterInfo:
    """Static description of a single register.

    Attributes:
        register: Register offset
        reg_type: Access class (RW, RO)
        width: Size in bytes (1 or 2)
        volatile: True if the value must never be cached
        description: Human-readable name
    """

    register: Register
    reg_type: RegisterType
    width: int = 1
    volatile: bool = False
    description: str = ""

    def __post_init__(self):
        """Validate register width."""
        if self.width not in (1, 2):
            raise ValueError(
                f"Register width {self.width} out of range for {self.register.name}"
            )

    @property
    def readonly(self) -> bool:
        return self.reg_type == RegisterType.RO

    @property
    def max_value(self) -> int:
        return (1 << (8 * self.width)) - 1


_RW = RegisterType.RW
_RO = RegisterType.RO

# fmt: off
_REGISTERS: tuple[RegisterInfo, ...] = (
    RegisterInfo(Register.MODEL_NUMBER, _RO, 2, description="Model Number"),
    RegisterInfo(Register.FIRMWARE_VERSION, _RO, description="Firmware Version"),
    RegisterInfo(Register.ID, _RW, description="Id"),
    RegisterInfo(Register.BAUD_RATE, _RW, description="Baud Rate"),
    RegisterInfo(Register.RETURN_DELAY, _RW, description="Return Delay"),
    RegisterInfo(Register.CW_ANGLE_LIMIT, _RW, 2, description="CW Angle Limit"),
    RegisterInfo(Register.CCW_ANGLE_LIMIT, _RW, 2, description="CCW Angle Limit"),
    RegisterInfo(Register.TEMPERATURE_LIMIT, _RW, description="Temperature Limit"),
    RegisterInfo(Register.LOW_VOLTAGE_LIMIT, _RW, description="Low Voltage Limit"),
    RegisterInfo(Register.HIGH_VOLTAGE_LIMIT, _RW, description="High Voltage Limit"),
    RegisterInfo(Register.MAX_TORQUE, _RW, 2, description="Max Torque"),
    RegisterInfo(
        Register.STATUS_RETURN_LEVEL, _RW, description="Status Return Level"
    ),
    RegisterInfo(Register.ALARM_LED, _RW, description="Alarm Led"),
    RegisterInfo(Register.ALARM_SHUTDOWN, _RW, description="Alarm Shutdown"),
    RegisterInfo(Register.DOWN_CALIBRATION, _RW, 2, description="Down Calibration"),
    RegisterInfo(Register.UP_CALIBRATION, _RW, 2, description="Up Calibration"),
    RegisterInfo(
        Register.TORQUE_ENABLE, _RW, volatile=True, description="Torque Enable"
    ),
    RegisterInfo(Register.LED, _RW, description="LED"),
    RegisterInfo(
        Register.CW_COMPLIANCE_MARGIN, _RW, description="CW Compliance Margin"
    ),
    RegisterInfo(
        Register.CCW_COMPLIANCE_MARGIN, _RW, description="CCW Compliance Margin"
    ),
    RegisterInfo(Register.CW_COMPLIANCE_SLOPE, _RW, description="CW Compliance Slope"),
    RegisterInfo(
        Register.CCW_COMPLIANCE_SLOPE, _RW, description="CCW Compliance Slope"
    ),
    RegisterInfo(Register.GOAL_POSITION, _RW, 2, description="Goal Position"),
    RegisterInfo(Register.MOVING_SPEED, _RW, 2, description="Moving Speed"),
    RegisterInfo(Register.TORQUE_LIMIT, _RW, 2, description="Torque Limit"),
    RegisterInfo(
        Register.CURRENT_POSITION, _RO, 2, volatile=True, description="Current Position"
    ),
    RegisterInfo(
        Register.CURRENT_SPEED, _RO, 2, volatile=True, description="Current Speed"
    ),
    RegisterInfo(
        Register.CURRENT_LOAD, _RO, 2, volatile=True, description="Current Load"
    ),
    RegisterInfo(
        Register.CURRENT_VOLTAGE, _RO, volatile=True, description="Current Voltage"
    ),
    RegisterInfo(
        Register.CURRENT_TEMPERATURE, _RO, volatile=True,
        description="Current Temperature",
    ),
    RegisterInfo(
        Register.REGISTERED_INSTRUCTION, _RW, volatile=True,
        description="Registered Instruction",
    ),
    RegisterInfo(Register.MOVING, _RO, volatile=True, description="Moving"),
    RegisterInfo(Register.LOCK, _RW, description="Lock"),
    RegisterInfo(Register.PUNCH, _RW, 2, description="Punch"),
)
# fmt: on

REGISTER_INFO: dict[Register, RegisterInfo] = {
    info.register: info for info in _REGISTERS
}

# Registers that are never re-read once seeded: the device only changes them
# through writes this host issued
SYNCHRONIZED_REGISTERS = frozenset({Register.GOAL_POSITION, Register.MOVING_SPEED})


def get_register_info(register: int) -> RegisterInfo:
    """Look up the static description of a register.

    Args:
        register: Register offset (Register member or plain int)

    Returns:
        RegisterInfo for the register

    Raises:
        ValueError: If the offset is not the start of a known register
    """
    try:
        return REGISTER_INFO[Register(register)]
    except ValueError:
        raise ValueError(f"Unknown register offset {register}") from None


def get_all_registers(reg_type: RegisterType | None = None) -> list[RegisterInfo]:
    """Get all register descriptions in control table order.

    Args:
        reg_type: If specified, only return registers of this type
    """
    if reg_type is None:
        return list(_REGISTERS)
    return [info for info in _REGISTERS if info.reg_type == reg_type]


def register_width(register: int) -> int:
    """Return the width of a register in bytes (1 or 2)."""
    return get_register_info(register).width


def is_readonly_register(register: int) -> bool:
    """Check if a register is read-only."""
    return get_register_info(register).readonly


def is_volatile_register(register: int) -> bool:
    """Check if a register must be fetched from the servo on every read."""
    return get_register_info(register).volatile


def registers_between(first: int, last: int) -> list[RegisterInfo]:
    """List the registers from ``first`` to ``last`` inclusive, in table order.

    Raises:
        ValueError: If either register is unknown or ``last`` precedes ``first``
    """
    first_info = get_register_info(first)
    last_info = get_register_info(last)
    if last_info.register < first_info.register:
        raise ValueError(
            f"Register range {first_info.register.name}..{last_info.register.name} "
            "is reversed"
        )
    return [
        info
        for info in _REGISTERS
        if first_info.register <= info.register <= last_info.register
    ]


def register_span(first: int, last: int) -> int:
    """Number of bytes covered by a contiguous read of ``first``..``last``."""
    last_info = get_register_info(last)
    return last_info.register + last_info.width - get_register_info(first).register


# =============================================================================
# Error status, baud rate and status return level
# =============================================================================


class ErrorStatus(enum.IntFlag):
    """Error bits reported in a status packet.

    The same bit layout is used by the ALARM_LED and ALARM_SHUTDOWN registers.
    """

    INPUT_VOLTAGE = 0x01
    ANGLE_LIMIT = 0x02
    OVERHEATING = 0x04
    RANGE = 0x08
    CHECKSUM = 0x10
    OVERLOAD = 0x20
    INSTRUCTION = 0x40


ERROR_DESCRIPTIONS: dict[ErrorStatus, str] = {
    ErrorStatus.INPUT_VOLTAGE: "Input Voltage Error",
    ErrorStatus.ANGLE_LIMIT: "Angle Limit Error",
    ErrorStatus.OVERHEATING: "Overheating Error",
    ErrorStatus.RANGE: "Range Error",
    ErrorStatus.CHECKSUM: "Checksum Error",
    ErrorStatus.OVERLOAD: "Overload Error",
    ErrorStatus.INSTRUCTION: "Instruction Error",
}


def error_text(flags: int) -> list[str]:
    """Describe each error flagged in an error status byte.

    Args:
        flags: Error status byte

    Returns:
        One description per set flag, lowest bit first
    """
    return [text for flag, text in ERROR_DESCRIPTIONS.items() if flags & flag]


class BaudRate(enum.IntEnum):
    """Values of the BAUD_RATE register for the standard rates."""

    BAUD_1000000 = 0x01
    BAUD_500000 = 0x03
    BAUD_400000 = 0x04
    BAUD_250000 = 0x07
    BAUD_200000 = 0x09
    BAUD_115200 = 0x10
    BAUD_57600 = 0x22
    BAUD_19200 = 0x67
    BAUD_9600 = 0xCF


class StatusReturnLevel(enum.IntEnum):
    """When a servo answers command packets with a status packet.

    This driver expects RESPOND_TO_ALL, the factory default.
    """

    NO_RESPONSE = 0
    RESPOND_TO_READ_DATA = 1
    RESPOND_TO_ALL = 2
