"""Unit tests for the per-servo register cache."""

import pytest

from fastcs_dynamixel.network import DynamixelNetwork
from fastcs_dynamixel.protocol import (
    AddressCollisionError,
    DynamixelProtocol,
    ReadOnlyRegisterError,
)
from fastcs_dynamixel.registers import (
    BaudRate,
    ErrorStatus,
    Register,
    StatusReturnLevel,
)
from fastcs_dynamixel.simulator import DynamixelSimulator, SimulatedStream


@pytest.fixture
def device(network):
    return network[1]


class TestConstruction:
    def test_seeds_goal_and_speed(self, device):
        assert device[Register.GOAL_POSITION] == 512
        assert device[Register.MOVING_SPEED] == 0
        assert device.dirty is False
        assert device.synchronized is True

    def test_other_registers_not_cached(self, device):
        assert device[Register.TORQUE_LIMIT] is None

    def test_names(self, device):
        assert repr(device) == "Device(address=1)"
        assert str(device) == "Dyn 1"


class TestReads:
    def test_non_volatile_read_once(self, device, stream):
        before = len(stream.writes)

        assert device.get_register(Register.TORQUE_LIMIT) == 1023
        assert device.get_register(Register.TORQUE_LIMIT) == 1023

        assert len(stream.writes) == before + 1

    def test_volatile_read_every_time(self, device, stream, simulator):
        before = len(stream.writes)

        assert device.current_temperature == 32
        simulator.servos[1][Register.CURRENT_TEMPERATURE] = 40
        assert device.current_temperature == 40

        assert len(stream.writes) == before + 2
        assert device[Register.CURRENT_TEMPERATURE] is None

    def test_synchronized_registers_from_cache(self, device, stream):
        before = len(stream.writes)

        assert device.goal_position == 512
        assert device.moving_speed == 0

        assert len(stream.writes) == before

    def test_invalidate(self, device, stream):
        device.get_register(Register.LED)
        device.invalidate(Register.LED)
        assert device[Register.LED] is None

        device.get_register(Register.TORQUE_LIMIT)
        device.invalidate()
        assert device[Register.TORQUE_LIMIT] is None
        assert device[Register.GOAL_POSITION] == 512

    def test_invalidate_keeps_goal_and_speed(self, device, stream):
        device.goal_position = 600

        device.invalidate(Register.GOAL_POSITION)
        device.invalidate(Register.MOVING_SPEED)

        assert device.goal_position == 600
        assert device.moving_speed == 0
        device.stop()
        assert device.moving_speed == 1

    def test_read_all(self, device, stream):
        before = len(stream.writes)

        device.read_all()

        assert len(stream.writes) == before + 1
        assert device[Register.MODEL_NUMBER] == 12
        assert device[Register.PUNCH] == 32
        assert device[Register.ID] == 1


class TestWrites:
    def test_write_changed_value(self, device, simulator):
        device.set_register(Register.TORQUE_LIMIT, 800)

        assert simulator.read_value(1, Register.TORQUE_LIMIT) == 800
        assert device[Register.TORQUE_LIMIT] == 800

    def test_unchanged_value_not_sent(self, device, stream):
        device.torque_limit = 500
        before = len(stream.writes)

        device.torque_limit = 500

        assert len(stream.writes) == before

    def test_cached_value_still_written_if_different(self, device, stream, simulator):
        assert device.torque_limit == 1023
        before = len(stream.writes)

        device.torque_limit = 1000

        assert len(stream.writes) == before + 1
        assert simulator.read_value(1, Register.TORQUE_LIMIT) == 1000

    def test_volatile_write_always_sent(self, device, stream, simulator):
        device.torque_enable = True
        device.torque_enable = True

        assert len([w for w in stream.writes if w[4] == 0x03]) == 2
        assert device.torque_enable is True
        assert device[Register.TORQUE_ENABLE] is None

    def test_read_only_rejected(self, device, stream):
        before = len(stream.writes)

        with pytest.raises(ReadOnlyRegisterError):
            device.set_register(Register.CURRENT_POSITION, 10)
        with pytest.raises(AttributeError):
            device.model_number = 5  # type: ignore[misc]

        assert len(stream.writes) == before

    def test_out_of_range(self, device, stream):
        before = len(stream.writes)

        with pytest.raises(ValueError, match="out of range"):
            device.set_register(Register.TORQUE_LIMIT, 0x10000)

        assert len(stream.writes) == before
        assert device[Register.TORQUE_LIMIT] is None


class TestSynchronizedMode:
    def test_goal_write_is_deferred(self, device, stream, simulator):
        before = len(stream.writes)

        device.goal_position = 700
        device.moving_speed = 100

        assert len(stream.writes) == before
        assert device.dirty is True
        assert device.goal_position == 700
        assert simulator.read_value(1, Register.GOAL_POSITION) == 512

    def test_goal_range_checked(self, device):
        with pytest.raises(ValueError, match="out of range"):
            device.goal_position = 0x10000
        assert device.dirty is False

    def test_unsynchronized_goal_write_is_immediate(self, device, simulator):
        device.synchronized = False

        device.goal_position = 300

        assert device.dirty is False
        assert simulator.read_value(1, Register.GOAL_POSITION) == 300
        assert device.goal_position == 300

    def test_moving_while_dirty(self, device):
        assert device.moving is False
        device.goal_position = 100
        assert device.moving is True

    def test_stop_holds_current_position(self, device, simulator):
        simulator.servos[1][Register.CURRENT_POSITION] = 0x34
        simulator.servos[1][Register.CURRENT_POSITION + 1] = 0x01

        device.stop()

        assert device.goal_position == 0x134
        assert device.moving_speed == 1
        assert device.dirty is True


class TestTypedAccessors:
    def test_scaled_values(self, device):
        assert device.current_voltage == 12.0
        assert device.high_voltage_limit == 14.0
        assert device.low_voltage_limit == 6.0
        assert device.return_delay == 500

    def test_scaled_writes(self, device, simulator):
        device.high_voltage_limit = 13.5
        device.return_delay = 100

        assert simulator.read_value(1, Register.HIGH_VOLTAGE_LIMIT) == 135
        assert simulator.read_value(1, Register.RETURN_DELAY) == 50

    def test_enum_values(self, device):
        assert device.baud_rate is BaudRate.BAUD_1000000
        assert device.status_return_level is StatusReturnLevel.RESPOND_TO_ALL
        assert device.alarm_shutdown == ErrorStatus.OVERHEATING | ErrorStatus.OVERLOAD

    def test_signed_speed_and_load(self, device, simulator):
        simulator.servos[1][Register.CURRENT_SPEED] = 0x10
        simulator.servos[1][Register.CURRENT_SPEED + 1] = 0x04
        simulator.servos[1][Register.CURRENT_LOAD] = 0x20

        assert device.current_speed == -16
        assert device.current_load == 32

    def test_flags(self, device):
        assert device.led is False
        device.led = True
        assert device.led is True
        assert device.lock is False


class TestReset:
    def test_reset_moves_device_to_default_address(self, monkeypatch):
        monkeypatch.setattr("fastcs_dynamixel.device.RESET_RECOVERY_DELAY", 0)
        simulator = DynamixelSimulator(ids=(5,))
        network = DynamixelNetwork(DynamixelProtocol(SimulatedStream(simulator)))
        network.scan(0, 10)
        device = network[5]
        device.torque_limit = 100

        device.reset()

        assert device.address == 1
        assert network[1] is device
        assert 5 not in network
        assert list(simulator.servos) == [1]
        assert device.torque_limit == 1023
        assert device.model_number == 12

    def test_reset_collision(self, network, stream):
        device = network[3]
        before = len(stream.writes)

        with pytest.raises(AddressCollisionError):
            device.reset()

        assert len(stream.writes) == before
        assert network[3] is device

    def test_failed_reset_keeps_address(self, network, monkeypatch):
        device = network[1]
        device.address = 5

        def fail(address):
            raise TimeoutError("no answer")

        monkeypatch.setattr(network.protocol, "reset", fail)

        with pytest.raises(TimeoutError):
            device.reset()

        assert device.address == 5
        assert network[5] is device
        assert 1 not in network
        assert len(network) == 3
