"""Command-line interface for Dynamixel bus testing.

Provides interactive commands for exercising the DynamixelProtocol and
DynamixelNetwork layers against real hardware or the simulator.
"""

import argparse
import logging
import sys
from typing import NoReturn

from .constants import BAUD_RATE, READ_TIMEOUT
from .handshake import HandshakeError, enter_toss_mode
from .network import DynamixelNetwork
from .protocol import DynamixelProtocol, PingResult, ProtocolError
from .registers import ErrorStatus, Register, error_text, get_register_info
from .transport import ByteStream, DynamixelTransport, EchoTransport

logger = logging.getLogger(__name__)


def parse_register(text: str) -> Register:
    """Look up a register by name (``goal_position``) or decimal offset."""
    if text.isdigit():
        return get_register_info(int(text)).register
    try:
        return Register[text.upper()]
    except KeyError:
        raise ValueError(f"Unknown register {text!r}") from None


class DynamixelCLI:
    """Interactive CLI for Dynamixel communication.

    Commands:
    - scan [low] [high]: Discover servos (default 0-253)
    - ping <id>: Ping a servo
    - r <id> <reg>: Read register (name or decimal offset)
    - w <id> <reg> <value>: Write register through the device cache
    - go <id> <position> [speed]: Queue a synchronized move
    - sync: Send queued moves in one SyncWrite
    - stop: Stop all servos and suppress motion
    - resume: Allow motion again
    - id <id> <new_id>: Change a servo's address
    - stats: Show protocol diagnostics
    - toss: Switch a CM-5 controller into toss mode
    - quit: Exit
    """

    def __init__(
        self,
        port: str,
        baudrate: int = BAUD_RATE,
        timeout: float = READ_TIMEOUT,
        echo: bool = False,
    ):
        """Initialize CLI.

        Args:
            port: Serial port path or sim:// URL
            baudrate: Serial baud rate
            timeout: Read timeout in seconds
            echo: Print every byte sent and received
        """
        self.port = port
        self.transport = DynamixelTransport(port, baudrate=baudrate, timeout=timeout)
        self.echo = echo
        self.stream: ByteStream | None = None
        self.protocol: DynamixelProtocol | None = None
        self.network: DynamixelNetwork | None = None

    def start(self) -> None:
        """Connect to the bus."""
        self.transport.connect()
        self.stream = self.transport
        if self.echo:
            self.stream = EchoTransport(self.transport, self._print_byte)
        self.protocol = DynamixelProtocol(self.stream)
        self.network = DynamixelNetwork(self.protocol)

        @self.protocol.on_device_error
        def on_device_error(address: int, error: ErrorStatus) -> None:
            print(f">>> Servo {address}: {', '.join(error_text(error))}")

        print(f"Connected to Dynamixel bus on {self.port}")
        print("Type 'help' for available commands")

    def stop(self) -> None:
        """Disconnect from the bus."""
        self.transport.disconnect()
        print("Disconnected")

    @staticmethod
    def _print_byte(writing: bool, byte: int) -> None:
        print(f"{'TX' if writing else 'RX'} {byte:02X}")

    def _device(self, text: str):
        address = int(text)
        device = self.network.get(address)  # type: ignore[union-attr]
        if device is None:
            raise ValueError(f"Servo {address} not found, run 'scan' first")
        return device

    def run_command(self, cmd_line: str) -> bool:
        """Execute a command.

        Args:
            cmd_line: Command line input

        Returns:
            False if should exit, True otherwise
        """
        parts = cmd_line.strip().split()
        if not parts:
            return True

        cmd = parts[0].lower()
        protocol = self.protocol
        network = self.network
        assert protocol is not None and network is not None

        try:
            if cmd in ("quit", "exit", "q"):
                return False

            elif cmd == "help":
                print(self.__class__.__doc__)

            elif cmd == "scan" and len(parts) <= 3:
                bounds = [int(p) for p in parts[1:]]
                devices = network.scan(*bounds)
                print(f"Found {len(devices)} servo(s): {[d.address for d in devices]}")

            elif cmd == "ping" and len(parts) == 2:
                address = int(parts[1])
                result = protocol.probe(address)
                if result is PingResult.PRESENT:
                    print(f"Servo {address} present")
                else:
                    print(f"Servo {address} {result.name.lower()}")

            elif cmd == "r" and len(parts) == 3:
                device = self._device(parts[1])
                register = parse_register(parts[2])
                value = device.get_register(register)
                print(f"{device} {register.name} = {value} ({value:#06x})")

            elif cmd == "w" and len(parts) == 4:
                device = self._device(parts[1])
                register = parse_register(parts[2])
                value = int(parts[3], 0)
                device.set_register(register, value)
                print(f"{device} {register.name} <- {value}")

            elif cmd == "go" and len(parts) in (3, 4):
                device = self._device(parts[1])
                device.goal_position = int(parts[2])
                if len(parts) == 4:
                    device.moving_speed = int(parts[3])
                print(f"{device} queued move to {device.goal_position}")

            elif cmd == "sync":
                count = network.synchronize()
                print(f"Synchronized {count} servo(s)")

            elif cmd == "stop":
                network.set_stopped(True)
                print("All servos stopped")

            elif cmd == "resume":
                network.set_stopped(False)
                print("Motion resumed")

            elif cmd == "id" and len(parts) == 3:
                device = self._device(parts[1])
                device.address = int(parts[2])
                print(f"Servo {parts[1]} is now {device.address}")

            elif cmd == "stats":
                lines = protocol.dump_statistics()
                print("\n".join(lines) if lines else "No responses yet")

            elif cmd == "toss":
                if enter_toss_mode(self.stream):  # type: ignore[arg-type]
                    print("CM-5 in toss mode")
                else:
                    print("No CM-5 found")

            else:
                print(f"Unknown command: {cmd}")
                print("Type 'help' for available commands")

        except (ValueError, HandshakeError) as e:
            print(f"Error: {e}")
        except (ProtocolError, TimeoutError) as e:
            print(f"Command failed: {e}")
        except Exception as e:
            print(f"Command failed: {e}")
            logger.exception("Command error")

        return True

    def run_interactive(self) -> None:
        """Run interactive command loop."""
        self.start()

        try:
            while True:
                try:
                    cmd_line = input("dynamixel> ")
                    if not self.run_command(cmd_line):
                        break
                except EOFError:
                    print()
                    break
                except KeyboardInterrupt:
                    print()
                    break
        finally:
            self.stop()


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv)
    """
    parser = argparse.ArgumentParser(description="Dynamixel bus test tool")
    parser.add_argument(
        "port",
        help="Serial port (e.g., /dev/ttyUSB0, COM3 or sim://1,2,3)",
    )
    parser.add_argument(
        "-b",
        "--baudrate",
        type=int,
        default=BAUD_RATE,
        help=f"Serial baud rate (default: {BAUD_RATE})",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=READ_TIMEOUT,
        help=f"Read timeout in seconds (default: {READ_TIMEOUT})",
    )
    parser.add_argument(
        "-e",
        "--echo",
        action="store_true",
        help="Print every byte sent and received",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-c",
        "--command",
        nargs="+",
        help="Execute single command and exit",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    cli = DynamixelCLI(args.port, args.baudrate, args.timeout, args.echo)

    try:
        if args.command:
            cli.start()
            try:
                cli.run_command(" ".join(args.command))
            finally:
                cli.stop()
        else:
            cli.run_interactive()
        exit_code = 0
    except KeyboardInterrupt:
        print("\nInterrupted")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
