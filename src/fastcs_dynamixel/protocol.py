"""Dynamixel packet protocol implementation.

This module implements the binary command/status packet protocol used by
Dynamixel servos, building on top of a byte stream (normally a
DynamixelTransport) to provide register read/write, deferred writes,
synchronized writes and bus discovery.

Packet format:
- Command: FF FF <ID> <LEN> <INSTR> <PARAM...> <CHK>
- Status:  FF FF <ID> <LEN> <ERROR> <PARAM...> <CHK>

Where:
- <ID> = servo address 0-253, or 254 to broadcast to every servo
- <LEN> = number of parameters + 2
- <CHK> = ~(ID + LEN + INSTR/ERROR + PARAMs) & 0xFF

Broadcast instructions never produce a status packet. The checksum of a
received status packet is read but not verified: a corrupted packet with
the expected address and length is accepted.
"""

import enum
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

import serial

from .constants import (
    BROADCAST_ID,
    HEADER,
    HEADER_BYTE,
    INVALID_ADDRESS,
    MAX_ADDRESS,
    MIN_ADDRESS,
    Instruction,
)
from .registers import (
    ErrorStatus,
    Register,
    error_text,
    get_register_info,
    register_span,
    registers_between,
)
from .transport import ByteStream

logger = logging.getLogger(__name__)

DeviceErrorCallback = Callable[[int, ErrorStatus], None]


class ProtocolError(Exception):
    """Base exception for protocol-level errors."""

    pass


class RegisterError(ProtocolError):
    """Raised when a register operation is not allowed."""

    pass


class ReadOnlyRegisterError(RegisterError):
    """Raised when writing a read-only register."""

    pass


class SyncWriteError(ProtocolError, ValueError):
    """Raised when SyncWrite parameters do not split evenly between servos."""

    pass


class AddressError(ProtocolError, ValueError):
    """Raised when a servo address is out of range."""

    pass


class AddressCollisionError(AddressError):
    """Raised when a new address is already used by another servo."""

    pass


class PingResult(enum.Enum):
    """Outcome of probing one address on the bus."""

    PRESENT = enum.auto()
    ABSENT = enum.auto()
    ERROR = enum.auto()


@dataclass
class ProtocolStatistics:
    """Diagnostic counters kept by a DynamixelProtocol.

    Response times are measured from the start of a packet read to the
    arrival of its first byte, in milliseconds.
    """

    first_header_byte: int = 0
    second_header_byte: int = 0
    third_header_byte: int = 0
    invalid_length: int = 0
    unexpected_id: int = 0
    unexpected_length: int = 0
    response_count: int = 0
    response_total_ms: float = 0.0
    response_max_ms: float = 0.0

    @property
    def response_average_ms(self) -> float:
        if not self.response_count:
            return 0.0
        return self.response_total_ms / self.response_count


def checksum(data: bytes) -> int:
    """Inverted low byte of the sum of ``data``."""
    return ~sum(data) & 0xFF


def build_packet(address: int, instruction: int, params: bytes = b"") -> bytes:
    """Build a complete command packet.

    Args:
        address: Destination address (0-253, or 254 for broadcast)
        instruction: Instruction code
        params: Instruction parameters

    Returns:
        Packet bytes including header and checksum
    """
    body = bytes([address, len(params) + 2, instruction]) + bytes(params)
    return HEADER + body + bytes([checksum(body)])


def encode_value(value: int, width: int) -> bytes:
    """Encode a register value as 1 byte or 2 bytes little-endian."""
    return value.to_bytes(width, "little")


def decode_value(data: bytes) -> int:
    """Decode a 1 or 2 byte little-endian register value."""
    return int.from_bytes(data, "little")


def _check_address(address: int, allow_broadcast: bool = False) -> None:
    if allow_broadcast and address == BROADCAST_ID:
        return
    if not MIN_ADDRESS <= address <= MAX_ADDRESS:
        raise AddressError(
            f"Servo address {address} out of range [{MIN_ADDRESS}-{MAX_ADDRESS}]"
        )


class DynamixelProtocol:
    """Dynamixel packet protocol handler.

    Sends instructions and matches status packets over a shared half-duplex
    byte stream. At most one exchange is in flight at a time and there is no
    internal locking, so one owner must serialize all calls.

    Status packets that are badly framed, or that come from the wrong servo
    or carry the wrong amount of data, are discarded and counted. A response
    is waited for until the stream's read timeout raises ``TimeoutError``.
    """

    def __init__(self, stream: ByteStream):
        """Initialize protocol handler.

        Args:
            stream: Connected byte stream (DynamixelTransport or compatible)
        """
        self.stream = stream
        self._stats = ProtocolStatistics()
        self._error_callbacks: list[DeviceErrorCallback] = []
        self._in_error_handler = False

    # =========================================================================
    # Device error notification
    # =========================================================================

    def on_device_error(self, callback: DeviceErrorCallback) -> DeviceErrorCallback:
        """Register callback for status packets reporting device errors.

        The callback is invoked synchronously with ``(address, flags)``. Bus
        traffic issued from inside the callback does not trigger further
        notifications.

        Args:
            callback: Function called for each status packet with errors

        Returns:
            The callback (for use as decorator)
        """
        self._error_callbacks.append(callback)
        return callback

    def clear_callbacks(self) -> None:
        """Remove all registered device error callbacks."""
        self._error_callbacks.clear()

    def _dispatch_device_error(self, address: int, error: ErrorStatus) -> None:
        if self._in_error_handler:
            return
        self._in_error_handler = True
        try:
            for callback in self._error_callbacks:
                try:
                    callback(address, error)
                except Exception as e:
                    logger.error(f"Error in device error callback: {e}", exc_info=True)
        finally:
            self._in_error_handler = False

    # =========================================================================
    # Diagnostics
    # =========================================================================

    @property
    def statistics(self) -> ProtocolStatistics:
        """Snapshot of the diagnostic counters."""
        return replace(self._stats)

    def reset_statistics(self) -> None:
        self._stats = ProtocolStatistics()

    def dump_statistics(self) -> list[str]:
        """Describe the non-zero diagnostic counters, one line each."""
        stats = self._stats
        lines = []
        if stats.response_count:
            lines.append(
                f"Average ms per Dynamixel response: {stats.response_average_ms:.1f}"
            )
            lines.append(
                f"Maximum ms per Dynamixel response: {stats.response_max_ms:.1f}"
            )
        for label, count in (
            ("1st Header Byte", stats.first_header_byte),
            ("2nd Header Byte", stats.second_header_byte),
            ("3rd Header Byte", stats.third_header_byte),
            ("Invalid Length", stats.invalid_length),
            ("Unexpected ID", stats.unexpected_id),
            ("Unexpected Length", stats.unexpected_length),
        ):
            if count:
                lines.append(f"{label}: {count}")
        return lines

    # =========================================================================
    # Packet I/O
    # =========================================================================

    def write_instruction(
        self, address: int, instruction: Instruction, params: bytes = b""
    ) -> None:
        """Send a command packet. No response is awaited.

        Args:
            address: Destination address (0-253, or 254 for broadcast)
            instruction: Instruction code
            params: Instruction parameters
        """
        packet = build_packet(address, instruction, params)
        logger.debug(f"{instruction.name} -> {address}: {packet.hex(' ')}")
        self.stream.write(packet)

    def read_packet(self) -> tuple[int, bytes | None]:
        """Read one status packet from the stream.

        Returns:
            ``(address, payload)``. A framing failure gives
            ``(INVALID_ADDRESS, None)``; the caller should read again.

        Raises:
            TimeoutError: If the stream times out mid-packet
        """
        # Only called straight after an instruction was written, so the wait
        # for the first byte is the servo's response time
        start = time.perf_counter()
        try:
            first = self.stream.read_byte()
        finally:
            elapsed = (time.perf_counter() - start) * 1000.0
            self._stats.response_count += 1
            self._stats.response_total_ms += elapsed
            self._stats.response_max_ms = max(self._stats.response_max_ms, elapsed)

        if first != HEADER_BYTE:
            self._stats.first_header_byte += 1
            return INVALID_ADDRESS, None
        if self.stream.read_byte() != HEADER_BYTE:
            self._stats.second_header_byte += 1
            return INVALID_ADDRESS, None

        address = self.stream.read_byte()
        if address == HEADER_BYTE:
            # An extra header byte is occasionally seen on the bus
            self._stats.third_header_byte += 1
            address = self.stream.read_byte()

        length = self.stream.read_byte() - 2
        if length < 0:
            self._stats.invalid_length += 1
            return INVALID_ADDRESS, None

        error = ErrorStatus(self.stream.read_byte())
        payload = bytearray()
        while len(payload) < length:
            payload += self.stream.read(length - len(payload))

        self.stream.read_byte()  # checksum, not verified

        if error:
            logger.warning(f"Servo {address} reports {', '.join(error_text(error))}")
            self._dispatch_device_error(address, error)

        return address, bytes(payload)

    def read_response(self, address: int, length: int) -> bytes | None:
        """Wait for the status packet from ``address`` carrying ``length`` bytes.

        Mismatched packets are discarded. Returns None immediately for the
        broadcast address, which never gets a status packet.

        Raises:
            TimeoutError: If the stream times out before a matching packet
        """
        if address == BROADCAST_ID:
            return None
        while True:
            packet_address, payload = self.read_packet()
            payload_length = 0 if payload is None else len(payload)
            if packet_address == address and payload_length == length:
                return payload if payload is not None else b""
            if packet_address != address:
                self._stats.unexpected_id += 1
            if payload_length != length:
                self._stats.unexpected_length += 1
            logger.debug(
                f"Discarding packet from {packet_address} with {payload_length} "
                f"bytes, waiting for {address} with {length}"
            )

    # =========================================================================
    # Instructions
    # =========================================================================

    def probe(self, address: int) -> PingResult:
        """Ping an address and classify the outcome.

        Args:
            address: Servo address (0-253)

        Returns:
            PRESENT if a matching status packet arrived, ABSENT on timeout,
            ERROR if the serial port failed
        """
        _check_address(address)
        try:
            self.write_instruction(address, Instruction.PING)
            self.read_response(address, 0)
        except TimeoutError:
            return PingResult.ABSENT
        except (serial.SerialException, OSError) as e:
            logger.error(f"Ping of servo {address} failed: {e}")
            return PingResult.ERROR
        return PingResult.PRESENT

    def ping(self, address: int) -> bool:
        """Check whether a servo answers at ``address``."""
        return self.probe(address) is PingResult.PRESENT

    def read_data(self, address: int, start: int, count: int) -> bytes:
        """Read ``count`` bytes of the control table starting at ``start``.

        Raises:
            TimeoutError: If the servo does not answer
        """
        _check_address(address)
        self.write_instruction(address, Instruction.READ_DATA, bytes([start, count]))
        return self.read_response(address, count)  # type: ignore[return-value]

    def write_data(
        self, address: int, start: int, data: bytes, deferred: bool = False
    ) -> None:
        """Write bytes into the control table starting at ``start``.

        Args:
            address: Servo address, or 254 for broadcast
            start: First control table offset
            data: Bytes to write
            deferred: If True, send RegWrite; the servo holds the write until
                an Action instruction arrives and sends no status packet

        Raises:
            TimeoutError: If an immediate write is not acknowledged
        """
        _check_address(address, allow_broadcast=True)
        instruction = Instruction.REG_WRITE if deferred else Instruction.WRITE_DATA
        self.write_instruction(address, instruction, bytes([start]) + bytes(data))
        if not deferred:
            self.read_response(address, 0)

    def action(self) -> None:
        """Broadcast Action, committing every pending deferred write."""
        self.write_instruction(BROADCAST_ID, Instruction.ACTION)

    def reset(self, address: int) -> None:
        """Restore a servo's factory defaults.

        The servo's address becomes 1 as a side effect. No status packet is
        awaited.
        """
        _check_address(address)
        logger.info(f"Resetting servo {address} to factory defaults")
        self.write_instruction(address, Instruction.RESET)

    def sync_write(self, start: int, count: int, params: Sequence[int]) -> None:
        """Write the same register block on several servos in one packet.

        Args:
            start: First control table offset
            count: Number of servos in ``params``
            params: For each servo, its address followed by its data bytes

        Raises:
            SyncWriteError: If ``params`` does not split into ``count`` rows
        """
        if count < 1 or len(params) % count != 0:
            raise SyncWriteError(
                f"SyncWrite parameters ({len(params)} bytes) do not split "
                f"into {count} rows"
            )
        row_length = len(params) // count - 1
        self.write_instruction(
            BROADCAST_ID,
            Instruction.SYNC_WRITE,
            bytes([start, row_length]) + bytes(params),
        )

    def scan_ids(self, low: int = MIN_ADDRESS, high: int = MAX_ADDRESS) -> list[int]:
        """Ping every address in ``low``..``high`` inclusive.

        Returns:
            Addresses that answered, ascending

        Raises:
            AddressError: Unless 0 <= low <= high <= 253
        """
        if not MIN_ADDRESS <= high <= MAX_ADDRESS:
            raise AddressError(f"High address {high} out of range [0-253]")
        if not MIN_ADDRESS <= low <= high:
            raise AddressError(f"Low address {low} out of range [0-{high}]")
        found = [address for address in range(low, high + 1) if self.ping(address)]
        logger.info(f"Found {len(found)} servo(s) in [{low}-{high}]: {found}")
        return found

    # =========================================================================
    # Register helpers
    # =========================================================================

    def read_register(self, address: int, register: Register) -> int:
        """Read and decode a single register."""
        info = get_register_info(register)
        return decode_value(self.read_data(address, info.register, info.width))

    def read_registers(
        self, address: int, first: Register, last: Register
    ) -> list[int]:
        """Read ``first``..``last`` in one transaction.

        Returns:
            One decoded value per register, in control table order
        """
        first_info = get_register_info(first)
        data = self.read_data(address, first_info.register, register_span(first, last))
        values = []
        for info in registers_between(first, last):
            offset = info.register - first_info.register
            values.append(decode_value(data[offset : offset + info.width]))
        return values

    def write_register(
        self, address: int, register: Register, value: int, deferred: bool = False
    ) -> None:
        """Encode and write a single register.

        Raises:
            ValueError: If value does not fit the register
        """
        info = get_register_info(register)
        if not 0 <= value <= info.max_value:
            raise ValueError(
                f"Value {value} out of range [0-{info.max_value}] "
                f"for {info.register.name}"
            )
        self.write_data(
            address, info.register, encode_value(value, info.width), deferred
        )
