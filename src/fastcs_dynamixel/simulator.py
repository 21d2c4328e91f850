"""Dynamixel bus simulator for testing without real hardware.

Simulates a chain of AX-12 servos at the byte level, allowing testing and
development without physical hardware. Decodes command packets, applies
them to a per-servo control table and queues the status packets a real
servo would send back.
"""

import logging

from .constants import BROADCAST_ID, DEFAULT_ADDRESS, HEADER, Instruction
from .registers import ErrorStatus, Register, StatusReturnLevel, register_width

logger = logging.getLogger(__name__)

CONTROL_TABLE_SIZE = 50

# Factory defaults of an AX-12 control table (offset: value)
_DEFAULTS: dict[int, int] = {
    Register.MODEL_NUMBER: 12,
    Register.FIRMWARE_VERSION: 0x18,
    Register.BAUD_RATE: 1,
    Register.RETURN_DELAY: 250,
    Register.CW_ANGLE_LIMIT: 0,
    Register.CCW_ANGLE_LIMIT: 1023,
    Register.TEMPERATURE_LIMIT: 70,
    Register.LOW_VOLTAGE_LIMIT: 60,
    Register.HIGH_VOLTAGE_LIMIT: 140,
    Register.MAX_TORQUE: 1023,
    Register.STATUS_RETURN_LEVEL: StatusReturnLevel.RESPOND_TO_ALL,
    Register.ALARM_LED: 0x24,
    Register.ALARM_SHUTDOWN: 0x24,
    Register.CW_COMPLIANCE_MARGIN: 1,
    Register.CCW_COMPLIANCE_MARGIN: 1,
    Register.CW_COMPLIANCE_SLOPE: 32,
    Register.CCW_COMPLIANCE_SLOPE: 32,
    Register.GOAL_POSITION: 512,
    Register.TORQUE_LIMIT: 1023,
    Register.CURRENT_POSITION: 512,
    Register.CURRENT_VOLTAGE: 120,
    Register.CURRENT_TEMPERATURE: 32,
    Register.PUNCH: 32,
}


def _default_table(servo_id: int) -> bytearray:
    table = bytearray(CONTROL_TABLE_SIZE)
    for offset, value in _DEFAULTS.items():
        table[offset] = value & 0xFF
        if register_width(offset) == 2:
            table[offset + 1] = value >> 8
    table[Register.ID] = servo_id
    return table


class DynamixelSimulator:
    """Software simulator for a chain of Dynamixel servos.

    Maintains a control table per servo and answers command packets the way
    the hardware does, including deferred (RegWrite/Action) writes, Reset
    and SyncWrite.
    """

    def __init__(self, ids=(1, 2, 3)):
        """Initialize simulator with servos at the given addresses."""
        self.servos: dict[int, bytearray] = {i: _default_table(i) for i in ids}
        self.error_flags: dict[int, int] = {}
        self._pending: dict[int, tuple[int, bytes]] = {}

    def read_value(self, servo_id: int, register: Register) -> int:
        """Read a register from a simulated servo's control table."""
        table = self.servos[servo_id]
        if register_width(register) == 2:
            return table[register] | table[register + 1] << 8
        return table[register]

    def set_error(self, servo_id: int, flags: int) -> None:
        """Make every status packet from ``servo_id`` report ``flags``."""
        self.error_flags[servo_id] = flags

    def process_command(self, data: bytes) -> bytes:
        """Process a command packet and return the status packet bytes.

        Args:
            data: Complete command packet including header and checksum

        Returns:
            Status packet bytes, empty when no servo answers
        """
        if len(data) < 6 or data[:2] != HEADER:
            logger.debug(f"Simulator: ignoring non-packet {data!r}")
            return b""

        servo_id, length, instruction = data[2], data[3], data[4]
        params = bytes(data[5 : 3 + length])
        checksum = data[3 + length] if len(data) > 3 + length else None
        expected = ~sum(data[2 : 3 + length]) & 0xFF

        if servo_id == BROADCAST_ID:
            targets = list(self.servos)
        elif servo_id in self.servos:
            targets = [servo_id]
        else:
            return b""

        if checksum != expected:
            logger.warning(f"Simulator: bad checksum for servo {servo_id}")
            if servo_id == BROADCAST_ID:
                return b""
            return self._status(servo_id, ErrorStatus.CHECKSUM)

        try:
            instruction = Instruction(instruction)
        except ValueError:
            if servo_id == BROADCAST_ID:
                return b""
            return self._status(servo_id, ErrorStatus.INSTRUCTION)

        if instruction == Instruction.SYNC_WRITE:
            self._sync_write(params)
            return b""

        response = b""
        for target in targets:
            response += self._execute(target, instruction, params)
        if servo_id == BROADCAST_ID:
            return b""
        return response

    def _execute(self, servo_id: int, instruction: Instruction, params: bytes) -> bytes:
        table = self.servos[servo_id]
        level = table[Register.STATUS_RETURN_LEVEL]

        if instruction == Instruction.PING:
            return self._status(servo_id)

        if instruction == Instruction.READ_DATA:
            start, count = params[0], params[1]
            if start + count > CONTROL_TABLE_SIZE:
                return self._status(servo_id, ErrorStatus.RANGE)
            if level == StatusReturnLevel.NO_RESPONSE:
                return b""
            return self._status(servo_id, 0, bytes(table[start : start + count]))

        if instruction in (Instruction.WRITE_DATA, Instruction.REG_WRITE):
            start, values = params[0], params[1:]
            error = 0
            if start + len(values) > CONTROL_TABLE_SIZE:
                error = ErrorStatus.RANGE
            elif instruction == Instruction.REG_WRITE:
                # Held until Action, and never answered
                self._pending[servo_id] = (start, values)
                table[Register.REGISTERED_INSTRUCTION] = 1
                return b""
            else:
                self._apply(servo_id, start, values)
            # The status packet comes from the address the command was sent to,
            # even when the write changed the ID
            if level == StatusReturnLevel.RESPOND_TO_ALL or error:
                return self._status(servo_id, error)
            return b""

        if instruction == Instruction.ACTION:
            if servo_id in self._pending:
                start, values = self._pending.pop(servo_id)
                table[Register.REGISTERED_INSTRUCTION] = 0
                self._apply(servo_id, start, values)
            if level == StatusReturnLevel.RESPOND_TO_ALL:
                return self._status(servo_id)
            return b""

        if instruction == Instruction.RESET:
            response = b""
            if level == StatusReturnLevel.RESPOND_TO_ALL:
                response = self._status(servo_id)
            del self.servos[servo_id]
            self._pending.pop(servo_id, None)
            self.servos[DEFAULT_ADDRESS] = _default_table(DEFAULT_ADDRESS)
            logger.info(f"Simulator: servo {servo_id} reset to factory defaults")
            return response

        return b""

    def _apply(self, servo_id: int, start: int, values: bytes) -> int:
        """Write into the control table, returning the (possibly new) id."""
        table = self.servos[servo_id]
        table[start : start + len(values)] = values
        logger.debug(f"Simulator: servo {servo_id} [{start}] <- {values.hex(' ')}")

        # Servos here move instantly
        goal = Register.GOAL_POSITION
        if start <= goal + 1 and start + len(values) > goal:
            table[Register.CURRENT_POSITION] = table[goal]
            table[Register.CURRENT_POSITION + 1] = table[goal + 1]

        new_id = table[Register.ID]
        if new_id != servo_id:
            self.servos[new_id] = self.servos.pop(servo_id)
            logger.info(f"Simulator: servo {servo_id} now answers to {new_id}")
        return new_id

    def _sync_write(self, params: bytes) -> None:
        start, length = params[0], params[1]
        rows = params[2:]
        step = length + 1
        for offset in range(0, len(rows), step):
            servo_id = rows[offset]
            if servo_id in self.servos:
                self._apply(servo_id, start, rows[offset + 1 : offset + step])

    def _status(self, servo_id: int, error: int = 0, params: bytes = b"") -> bytes:
        error |= self.error_flags.get(servo_id, 0)
        body = bytes([servo_id, len(params) + 2, error]) + params
        return HEADER + body + bytes([~sum(body) & 0xFF])

    def reset(self) -> None:
        """Reset every simulated servo to its factory defaults."""
        self.servos = {i: _default_table(i) for i in self.servos}
        self.error_flags.clear()
        self._pending.clear()


class SimulatedStream:
    """Byte stream connected to a DynamixelSimulator.

    Records every write and read call so tests can assert on bus traffic.
    Raw bytes can be injected ahead of the simulator's responses to mimic
    line noise.
    """

    def __init__(
        self,
        simulator: DynamixelSimulator,
        timeout: float = 0.05,
        chunk_size: int | None = None,
    ):
        """
        Args:
            simulator: Bus simulator answering the writes
            timeout: Nominal read timeout (reads never block)
            chunk_size: If set, cap the bytes returned per read() call
        """
        self.simulator = simulator
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.writes: list[bytes] = []
        self.read_calls = 0
        self._rx = bytearray()

    def inject(self, data: bytes) -> None:
        """Queue raw bytes to be read before any later response."""
        self._rx += data

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        self._rx += self.simulator.process_command(bytes(data))

    def read(self, size: int) -> bytes:
        self.read_calls += 1
        if not self._rx:
            raise TimeoutError(f"Read timeout after {self.timeout}s")
        if self.chunk_size is not None:
            size = min(size, self.chunk_size)
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def read_byte(self) -> int:
        return self.read(1)[0]

    @property
    def pending(self) -> bytes:
        """Bytes queued but not yet read."""
        return bytes(self._rx)
