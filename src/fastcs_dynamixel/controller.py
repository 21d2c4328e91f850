"""FastCS controllers for a Dynamixel servo bus.

Provides EPICS PVs for the servos found on one serial bus. The top-level
DynamixelController owns the transport and the DynamixelNetwork; every
servo found by the startup scan gets a ServoController sub-controller.

Goal position and moving speed writes only update the register cache. A
background task sends them to all servos in one SyncWrite packet every
``sync_period`` seconds.
"""

import asyncio
import logging

from fastcs.attributes import AttrR, AttrRW
from fastcs.controllers import Controller
from fastcs.datatypes import Bool, Float, Int, String
from fastcs.methods import command
from fastcs.util import ONCE

from .constants import (
    BAUD_RATE,
    FAST_UPDATE,
    MAX_ADDRESS,
    MIN_ADDRESS,
    READ_TIMEOUT,
    SLOW_UPDATE,
    SYNC_PERIOD,
)
from .device import Device
from .network import DynamixelNetwork
from .protocol import DynamixelProtocol
from .register_io import DynamixelRegisterIO, DynamixelRegisterIORef
from .registers import ErrorStatus, Register, error_text
from .transport import DynamixelTransport

logger = logging.getLogger(__name__)

__all__ = ["DynamixelController", "ServoController"]


class ServoController(Controller):
    """Attributes for a single servo.

    Attributes:
        model_number: Servo model (12 for an AX-12)
        firmware_version: Servo firmware version
        goal_position: Target position, sent by the synchronize loop
        moving_speed: Target speed, sent by the synchronize loop
        current_position/speed/load: Live feedback, polled
        moving: True while the servo is moving
        torque_enable: Motor power
        led: Status LED
        error: Text of the last error flags the servo reported
    """

    def __init__(self, device: Device, register_io: DynamixelRegisterIO):
        """Initialize a servo sub-controller.

        Args:
            device: The Device this controller exposes
            register_io: The shared DynamixelRegisterIO instance
        """
        super().__init__(ios=[register_io])

        self.device = device

        self.model_number = self.make_register(Register.MODEL_NUMBER, Int(), AttrR)
        self.firmware_version = self.make_register(
            Register.FIRMWARE_VERSION, Int(), AttrR
        )

        self.goal_position = self.make_register(
            Register.GOAL_POSITION, Int(), update_period=FAST_UPDATE
        )
        self.moving_speed = self.make_register(
            Register.MOVING_SPEED, Int(), update_period=FAST_UPDATE
        )
        self.torque_limit = self.make_register(Register.TORQUE_LIMIT, Int())
        self.cw_angle_limit = self.make_register(Register.CW_ANGLE_LIMIT, Int())
        self.ccw_angle_limit = self.make_register(Register.CCW_ANGLE_LIMIT, Int())
        self.torque_enable = self.make_register(
            Register.TORQUE_ENABLE, Bool(), update_period=SLOW_UPDATE
        )
        self.led = self.make_register(Register.LED, Bool())

        self.current_position = self.make_register(
            Register.CURRENT_POSITION, Int(), AttrR, FAST_UPDATE
        )
        # Signed, negative when turning clockwise
        self.current_speed = self.make_register(
            Register.CURRENT_SPEED, Int(), AttrR, FAST_UPDATE, "current_speed"
        )
        self.current_load = self.make_register(
            Register.CURRENT_LOAD, Int(), AttrR, FAST_UPDATE, "current_load"
        )
        self.moving = self.make_register(Register.MOVING, Bool(), AttrR, FAST_UPDATE)
        self.current_temperature = self.make_register(
            Register.CURRENT_TEMPERATURE, Int(), AttrR, SLOW_UPDATE
        )
        # Volts
        self.current_voltage = self.make_register(
            Register.CURRENT_VOLTAGE, Float(), AttrR, SLOW_UPDATE, "current_voltage"
        )

        # Updated from the protocol's device error callback (no IO)
        self.error = AttrR(String())

    def make_register(
        self,
        register: Register,
        dtype,
        attr_class: type[AttrR] = AttrRW,
        update_period: float | None = ONCE,
        accessor: str | None = None,
    ) -> AttrR:
        """Helper to create an attribute for one of this servo's registers"""
        io_ref = DynamixelRegisterIORef(
            address=self.device.address,
            register=register,
            update_period=update_period,
            accessor=accessor,
        )
        return attr_class(datatype=dtype, io_ref=io_ref)

    async def report_error(self, error: ErrorStatus) -> None:
        await self.error.update(", ".join(error_text(error)))

    @command()
    async def stop(self) -> None:
        """Stop this servo where it is."""
        self.device.stop()


class DynamixelController(Controller):
    """Top-level controller for a Dynamixel bus.

    Attributes:
        connected: Connection status
        status_msg: Human-readable status message
        stopped: True while all motion is suppressed
        servo_count: Number of servos found by the scan
        response_count: Status packets received
        response_average_ms: Mean wait for a status packet
        response_max_ms: Longest wait for a status packet

    Sub-controllers:
        servo<N>: One ServoController per servo address N
    """

    def __init__(
        self,
        port: str,
        baudrate: int = BAUD_RATE,
        timeout: float = READ_TIMEOUT,
        low: int = MIN_ADDRESS,
        high: int = MAX_ADDRESS,
        sync_period: float = SYNC_PERIOD,
    ):
        """Initialize Dynamixel controller.

        Args:
            port: Serial port path (e.g., '/dev/ttyUSB0', 'COM3', 'sim://1,2,3')
            baudrate: Serial baud rate
            timeout: Read timeout in seconds
            low: Lowest servo address to scan
            high: Highest servo address to scan
            sync_period: Seconds between SyncWrite batches
        """
        self._port = port
        self._baudrate = baudrate
        self._timeout = timeout
        self._low = low
        self._high = high
        self._sync_period = sync_period
        self._transport: DynamixelTransport | None = None
        self._network: DynamixelNetwork | None = None
        self._sync_task: asyncio.Task | None = None
        # Error reports in flight, held until done
        self._report_tasks: set[asyncio.Task] = set()

        # Create IO handler (will be given the network after the scan)
        self._register_io = DynamixelRegisterIO(None)

        super().__init__(ios=[self._register_io])

        self.servos: dict[int, ServoController] = {}

        # =====================================================================
        # Bus status (no IO, updated by this controller)
        # =====================================================================

        self.connected = AttrR(Bool())
        self.status_msg = AttrR(String())
        self.stopped = AttrR(Bool())
        self.servo_count = AttrR(Int())
        self.response_count = AttrR(Int())
        self.response_average_ms = AttrR(Float())
        self.response_max_ms = AttrR(Float())

    @property
    def network(self) -> DynamixelNetwork | None:
        return self._network

    async def initialise(self) -> None:
        """Open the bus, scan it and create a sub-controller per servo."""
        self._open()
        assert self._network is not None

        for device in self._network.scan(self._low, self._high):
            servo = ServoController(device, self._register_io)
            self.servos[device.address] = servo
            self.add_sub_controller(f"servo{device.address}", servo)

        logger.info(f"Found {len(self.servos)} servo(s) on {self._port}")

    def _open(self) -> None:
        if self._transport is not None and self._transport.connected:
            return

        self._transport = DynamixelTransport(
            self._port, baudrate=self._baudrate, timeout=self._timeout
        )
        self._transport.connect()
        protocol = DynamixelProtocol(self._transport)
        self._network = DynamixelNetwork(protocol)
        self._register_io.set_network(self._network)

        # Reconnecting: the sub-controllers already exist, rebind their devices
        if self.servos:
            self._network.scan(self._low, self._high)
            for address, servo in self.servos.items():
                device = self._network.get(address)
                if device is None:
                    logger.warning(f"Servo {address} did not answer after reconnect")
                else:
                    servo.device = device

        @protocol.on_device_error
        def on_device_error(address: int, error: ErrorStatus) -> None:
            servo = self.servos.get(address)
            if servo is not None:
                task = asyncio.get_running_loop().create_task(
                    servo.report_error(error)
                )
                self._report_tasks.add(task)
                task.add_done_callback(self._report_done)

    def _report_done(self, task: asyncio.Task) -> None:
        self._report_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error reporting servo error: {task.exception()}")

    async def connect(self) -> None:
        """Connect to the bus and start the synchronize loop."""
        try:
            self._open()

            await self.connected.update(True)
            await self.servo_count.update(len(self.servos))
            await self.stopped.update(False)

            self._sync_task = asyncio.create_task(self._synchronize_loop())

            logger.info(f"Connected to Dynamixel bus on {self._port}")
            await self.status_msg.update(f"Connected to {self._port}")

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            await self.status_msg.update(f"Connection failed: {e}")
            raise

    async def disconnect(self) -> None:
        """Stop the synchronize loop and close the bus."""
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

        if self._transport:
            self._transport.disconnect()
            self._transport = None
            self._network = None
            self._register_io.set_network(None)

        await self.connected.update(False)
        logger.info("Disconnected from Dynamixel bus")
        await self.status_msg.update("Disconnected")

    def _check_connected(self) -> DynamixelNetwork:
        """Return the network, raising RuntimeError if not connected."""
        if not self._network:
            raise RuntimeError("Not connected to Dynamixel bus")
        return self._network

    # Commands

    @command()
    async def stop_all(self) -> None:
        """Stop every servo and suppress further motion."""
        await self.set_stopped(True)

    @command()
    async def resume(self) -> None:
        """Allow motion again after stop_all."""
        await self.set_stopped(False)

    @command()
    async def synchronize_now(self) -> None:
        """Send pending moves without waiting for the next sync period."""
        await self.synchronize()

    async def set_stopped(self, value: bool) -> None:
        network = self._check_connected()
        network.set_stopped(value)
        await self.stopped.update(value)
        await self.status_msg.update("Stopped" if value else "Running")

    async def synchronize(self) -> int:
        network = self._check_connected()
        count = network.synchronize()
        await self._update_statistics()
        return count

    async def _update_statistics(self) -> None:
        if not self._network:
            return
        stats = self._network.protocol.statistics
        await self.response_count.update(stats.response_count)
        await self.response_average_ms.update(stats.response_average_ms)
        await self.response_max_ms.update(stats.response_max_ms)

    async def _synchronize_loop(self) -> None:
        """Background task sending the dirty goal positions and speeds."""
        try:
            while self._transport and self._transport.connected:
                try:
                    await self.synchronize()
                    await asyncio.sleep(self._sync_period)
                except Exception as e:
                    logger.error(f"Error synchronizing servos: {e}")
                    await asyncio.sleep(SLOW_UPDATE)
        except asyncio.CancelledError:
            logger.debug("Synchronize task cancelled")
            raise
