"""Serial transport for Dynamixel network communication."""

import logging
from collections.abc import Callable
from typing import Protocol

import serial

from .constants import BAUD_RATE, READ_TIMEOUT

logger = logging.getLogger(__name__)


class ByteStream(Protocol):
    """The duplex byte channel the packet protocol runs over.

    Reads raise ``TimeoutError`` when no byte arrives within ``timeout``.
    """

    timeout: float

    def read_byte(self) -> int: ...

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> None: ...


class DynamixelTransport:
    """Blocking serial transport for a Dynamixel network.

    Provides low-level byte I/O with the servo bus over a half-duplex
    serial adapter (USB2Dynamixel, CM-5 in toss mode, ...). Handles
    connection management, timeouts and cleanup.

    Supports simulation mode: Use port="sim://1,2,3" to talk to a software
    simulated bus with servos at the listed addresses instead of hardware.

    The Dynamixel bus uses:
    - 1 Mbps by default, 8N1, no flow control
    - Binary command/status packets
    """

    def __init__(
        self,
        port: str,
        baudrate: int = BAUD_RATE,
        timeout: float = READ_TIMEOUT,
    ):
        """Initialize transport for given serial port.

        Args:
            port: Serial port path (e.g., '/dev/ttyUSB0', 'COM3')
                  or 'sim://<id>,<id>,...' for the simulator
            baudrate: Serial line rate
            timeout: Read timeout in seconds
        """
        self.port = port
        self.baudrate = baudrate
        self._timeout = timeout
        self._is_simulation = port.startswith("sim://")
        self._serial: serial.Serial | None = None
        self._stream: ByteStream | None = None

    def connect(self) -> None:
        """Open serial connection to the servo bus or simulator.

        Raises:
            serial.SerialException: If connection fails (hardware mode)
        """
        if self.connected:
            logger.warning(f"Already connected to {self.port}")
            return

        if self._is_simulation:
            # Import simulator locally, it is only needed for sim:// ports
            from .simulator import DynamixelSimulator, SimulatedStream

            ids = _parse_sim_ids(self.port)
            logger.info(f"Starting Dynamixel simulator with servos {ids}")
            self._stream = SimulatedStream(DynamixelSimulator(ids), self._timeout)
        else:
            logger.info(f"Connecting to {self.port} at {self.baudrate} baud")
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._timeout,
            )
            logger.info(f"Connected to {self.port}")

    def disconnect(self) -> None:
        """Close serial connection or drop the simulator."""
        if not self.connected:
            return

        logger.info(f"Disconnecting from {self.port}")
        if self._serial is not None:
            self._serial.close()
            self._serial = None
        self._stream = None
        logger.info("Disconnected from servo bus")

    @property
    def connected(self) -> bool:
        """Check if transport is connected."""
        return self._serial is not None or self._stream is not None

    @property
    def simulator(self):
        """The simulated bus behind a sim:// port, otherwise None."""
        return getattr(self._stream, "simulator", None)

    @property
    def timeout(self) -> float:
        return self._timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self._timeout = value
        if self._serial is not None:
            self._serial.timeout = value
        if self._stream is not None:
            self._stream.timeout = value

    def write(self, data: bytes) -> None:
        """Write bytes to the bus as one contiguous write.

        Raises:
            RuntimeError: If not connected
        """
        if not self.connected:
            raise RuntimeError("Not connected to servo bus")

        logger.debug(f"TX: {data.hex(' ')}")
        if self._stream is not None:
            self._stream.write(data)
        else:
            self._serial.write(data)  # type: ignore[union-attr]

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; fewer may be returned.

        Raises:
            RuntimeError: If not connected
            TimeoutError: If no byte arrives before the read timeout
        """
        if not self.connected:
            raise RuntimeError("Not connected to servo bus")

        if self._stream is not None:
            data = self._stream.read(size)
        else:
            # Only wait for the first byte, then take whatever is buffered
            data = self._serial.read(1)  # type: ignore[union-attr]
            if data and size > 1:
                waiting = self._serial.in_waiting  # type: ignore[union-attr]
                if waiting:
                    data += self._serial.read(  # type: ignore[union-attr]
                        min(size - 1, waiting)
                    )
            if not data:
                logger.debug(f"Read timeout after {self._timeout}s")
                raise TimeoutError(f"Read timeout after {self._timeout}s")

        logger.debug(f"RX: {data.hex(' ')}")
        return data

    def read_byte(self) -> int:
        """Read a single byte.

        Raises:
            TimeoutError: If no byte arrives before the read timeout
        """
        return self.read(1)[0]

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False


def _parse_sim_ids(port: str) -> list[int]:
    """Servo addresses for a sim:// port; a plain name gives servos 1-3."""
    id_list = port.removeprefix("sim://")
    try:
        ids = [int(part) for part in id_list.split(",") if part.strip()]
    except ValueError:
        ids = []
    return ids or [1, 2, 3]


class EchoTransport:
    """Pass-through stream that reports every byte to an observer.

    Wraps another byte stream for debugging. The observer is called with
    ``(writing, byte)`` for each byte written, before it is sent, and for
    each byte read.
    """

    def __init__(
        self,
        stream: ByteStream,
        observer: Callable[[bool, int], None] | None = None,
    ):
        self._stream = stream
        self.observer = observer
        self.writing = False
        self.echo_byte: int | None = None

    @property
    def timeout(self) -> float:
        return self._stream.timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self._stream.timeout = value

    def _echo(self, writing: bool, byte: int) -> None:
        self.writing = writing
        self.echo_byte = byte
        if self.observer is not None:
            self.observer(writing, byte)

    def write(self, data: bytes) -> None:
        for byte in data:
            self._echo(True, byte)
        self._stream.write(data)

    def read(self, size: int) -> bytes:
        data = self._stream.read(size)
        for byte in data:
            self._echo(False, byte)
        return data

    def read_byte(self) -> int:
        byte = self._stream.read_byte()
        self._echo(False, byte)
        return byte
