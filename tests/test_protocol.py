"""Unit tests for the Dynamixel packet protocol.

Tests cover:
- Checksum, packet building and value encoding
- Status packet framing, resynchronization and diagnostics
- Instructions against the bus simulator
- Device error notification
- Argument validation before any bus traffic
"""

import pytest
import serial

from fastcs_dynamixel.constants import BROADCAST_ID, INVALID_ADDRESS, Instruction
from fastcs_dynamixel.protocol import (
    AddressError,
    DynamixelProtocol,
    PingResult,
    ProtocolError,
    SyncWriteError,
    build_packet,
    checksum,
    decode_value,
    encode_value,
)
from fastcs_dynamixel.registers import ErrorStatus, Register
from fastcs_dynamixel.simulator import DynamixelSimulator, SimulatedStream


def status_packet(address: int, error: int = 0, params: bytes = b"") -> bytes:
    body = bytes([address, len(params) + 2, error]) + params
    return b"\xff\xff" + body + bytes([checksum(body)])


@pytest.fixture
def empty_stream():
    """Stream with no servos behind it, for injected packets only."""
    return SimulatedStream(DynamixelSimulator(ids=()))


# =============================================================================
# Encoding
# =============================================================================


class TestEncoding:
    def test_checksum(self):
        assert checksum(bytes([10, 2, 1])) == 0xF2

    def test_checksum_wraps(self):
        assert checksum(bytes([0xFF, 0xFF, 0x10])) == ~(0x20E) & 0xFF

    def test_build_ping(self):
        assert build_packet(1, Instruction.PING) == bytes(
            [0xFF, 0xFF, 0x01, 0x02, 0x01, 0xFB]
        )

    def test_build_read(self):
        packet = build_packet(1, Instruction.READ_DATA, bytes([0x2B, 0x01]))
        assert packet == bytes([0xFF, 0xFF, 0x01, 0x04, 0x02, 0x2B, 0x01, 0xCC])

    def test_encode_little_endian(self):
        assert encode_value(0x1234, 2) == b"\x34\x12"
        assert encode_value(7, 1) == b"\x07"

    def test_decode_little_endian(self):
        assert decode_value(b"\x14\x00") == 20
        assert decode_value(b"\xff\x03") == 1023
        assert decode_value(b"\x05") == 5


# =============================================================================
# Status packet framing
# =============================================================================


class TestReadPacket:
    def test_decode_status_packet(self, empty_stream):
        empty_stream.inject(bytes([0xFF, 0xFF, 0x05, 0x04, 0x00, 0x14, 0x00, 0xE2]))
        protocol = DynamixelProtocol(empty_stream)

        address, payload = protocol.read_packet()

        assert address == 5
        assert payload == b"\x14\x00"
        assert decode_value(payload) == 20

    def test_checksum_not_verified(self, empty_stream):
        empty_stream.inject(bytes([0xFF, 0xFF, 0x05, 0x02, 0x00, 0x00]))
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_packet() == (5, b"")

    def test_third_header_byte_tolerated(self, empty_stream):
        empty_stream.inject(b"\xff" + status_packet(5))
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_packet() == (5, b"")
        assert protocol.statistics.third_header_byte == 1

    def test_bad_first_header_byte(self, empty_stream):
        empty_stream.inject(b"\x00")
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_packet() == (INVALID_ADDRESS, None)
        assert protocol.statistics.first_header_byte == 1

    def test_bad_second_header_byte(self, empty_stream):
        empty_stream.inject(b"\xff\x00")
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_packet() == (INVALID_ADDRESS, None)
        assert protocol.statistics.second_header_byte == 1

    def test_invalid_length(self, empty_stream):
        empty_stream.inject(b"\xff\xff\x05\x01")
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_packet() == (INVALID_ADDRESS, None)
        assert protocol.statistics.invalid_length == 1

    def test_payload_arriving_in_pieces(self):
        stream = SimulatedStream(DynamixelSimulator(ids=()), chunk_size=1)
        stream.inject(status_packet(7, params=b"\x01\x02\x03"))
        protocol = DynamixelProtocol(stream)

        assert protocol.read_packet() == (7, b"\x01\x02\x03")

    def test_timeout_propagates(self, empty_stream):
        protocol = DynamixelProtocol(empty_stream)

        with pytest.raises(TimeoutError):
            protocol.read_packet()
        assert protocol.statistics.response_count == 1


class TestReadResponse:
    def test_resync_after_garbage(self, empty_stream):
        empty_stream.inject(b"\x00" + status_packet(5))
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_response(5, 0) == b""
        stats = protocol.statistics
        assert stats.first_header_byte == 1
        assert stats.unexpected_id == 1

    def test_discards_other_address(self, empty_stream):
        empty_stream.inject(status_packet(4) + status_packet(5, params=b"\x01"))
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_response(5, 1) == b"\x01"
        stats = protocol.statistics
        assert stats.unexpected_id == 1
        assert stats.unexpected_length == 1

    def test_discards_wrong_length(self, empty_stream):
        empty_stream.inject(status_packet(5, params=b"\x01") + status_packet(5))
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_response(5, 0) == b""
        assert protocol.statistics.unexpected_length == 1
        assert protocol.statistics.unexpected_id == 0

    def test_broadcast_never_reads(self, empty_stream):
        protocol = DynamixelProtocol(empty_stream)

        assert protocol.read_response(BROADCAST_ID, 0) is None
        assert empty_stream.read_calls == 0

    def test_times_out_without_match(self, empty_stream):
        empty_stream.inject(status_packet(4))
        protocol = DynamixelProtocol(empty_stream)

        with pytest.raises(TimeoutError):
            protocol.read_response(5, 0)


# =============================================================================
# Instructions
# =============================================================================


class TestInstructions:
    def test_ping(self, protocol, stream):
        assert protocol.ping(1) is True
        assert protocol.ping(9) is False
        assert stream.writes[0] == build_packet(1, Instruction.PING)

    def test_probe_absent(self, protocol):
        assert protocol.probe(42) is PingResult.ABSENT

    def test_probe_serial_failure(self, simulator):
        class BrokenStream(SimulatedStream):
            def write(self, data):
                raise serial.SerialException("device disconnected")

        protocol = DynamixelProtocol(BrokenStream(simulator))

        assert protocol.probe(1) is PingResult.ERROR
        assert protocol.ping(1) is False

    def test_probe_rejects_broadcast(self, protocol, stream):
        with pytest.raises(AddressError):
            protocol.probe(BROADCAST_ID)
        assert stream.writes == []

    def test_read_register(self, protocol):
        assert protocol.read_register(1, Register.MODEL_NUMBER) == 12
        assert protocol.read_register(1, Register.FIRMWARE_VERSION) == 0x18

    def test_read_registers(self, protocol, stream):
        values = protocol.read_registers(
            2, Register.GOAL_POSITION, Register.MOVING_SPEED
        )

        assert values == [512, 0]
        assert len(stream.writes) == 1

    def test_write_register(self, protocol, simulator):
        protocol.write_register(3, Register.TORQUE_LIMIT, 0x0200)

        assert simulator.read_value(3, Register.TORQUE_LIMIT) == 0x0200
        assert simulator.read_value(1, Register.TORQUE_LIMIT) == 1023

    def test_write_register_out_of_range(self, protocol, stream):
        with pytest.raises(ValueError, match="out of range"):
            protocol.write_register(1, Register.LED, 256)
        assert stream.writes == []

    def test_write_times_out(self, protocol):
        with pytest.raises(TimeoutError):
            protocol.write_register(9, Register.LED, 1)

    def test_deferred_write_and_action(self, protocol, simulator, stream):
        protocol.write_register(2, Register.LED, 1, deferred=True)

        assert stream.read_calls == 0
        assert simulator.read_value(2, Register.LED) == 0
        assert protocol.read_register(2, Register.REGISTERED_INSTRUCTION) == 1

        protocol.action()

        assert simulator.read_value(2, Register.LED) == 1
        assert protocol.read_register(2, Register.REGISTERED_INSTRUCTION) == 0

    def test_broadcast_write(self, protocol, simulator, stream):
        protocol.write_register(BROADCAST_ID, Register.LED, 1)

        assert stream.read_calls == 0
        assert stream.pending == b""
        for servo_id in (1, 2, 3):
            assert simulator.read_value(servo_id, Register.LED) == 1

    def test_reset_awaits_nothing(self, protocol, simulator, stream):
        protocol.reset(3)

        assert stream.read_calls == 0
        assert stream.writes[-1] == build_packet(3, Instruction.RESET)
        assert 3 not in simulator.servos

    def test_sync_write(self, protocol, simulator, stream):
        rows = [1, 0x00, 0x01, 0x10, 0x00, 3, 0xFF, 0x03, 0x20, 0x00]
        protocol.sync_write(Register.GOAL_POSITION, 2, rows)

        assert stream.writes[-1] == build_packet(
            BROADCAST_ID, Instruction.SYNC_WRITE, bytes([30, 4, *rows])
        )
        assert stream.read_calls == 0
        assert simulator.read_value(1, Register.GOAL_POSITION) == 0x100
        assert simulator.read_value(3, Register.GOAL_POSITION) == 1023
        assert simulator.read_value(3, Register.MOVING_SPEED) == 0x20
        assert simulator.read_value(2, Register.GOAL_POSITION) == 512

    @pytest.mark.parametrize("count, length", [(0, 0), (0, 5), (2, 7), (3, 10)])
    def test_sync_write_rejects_uneven_rows(self, protocol, stream, count, length):
        with pytest.raises(SyncWriteError):
            protocol.sync_write(Register.GOAL_POSITION, count, [0] * length)
        assert stream.writes == []

    def test_sync_write_error_is_value_error(self):
        assert issubclass(SyncWriteError, ValueError)
        assert issubclass(SyncWriteError, ProtocolError)


class TestScan:
    def test_scan_ascending(self):
        stream = SimulatedStream(DynamixelSimulator(ids=(9, 2, 5)))
        protocol = DynamixelProtocol(stream)

        assert protocol.scan_ids(0, 20) == [2, 5, 9]
        assert len(stream.writes) == 21

    def test_scan_is_inclusive(self, protocol):
        assert protocol.scan_ids(1, 1) == [1]
        assert protocol.scan_ids(3, 3) == [3]

    @pytest.mark.parametrize("low, high", [(5, 4), (0, 254), (-1, 3)])
    def test_scan_bounds(self, protocol, stream, low, high):
        with pytest.raises(AddressError):
            protocol.scan_ids(low, high)
        assert stream.writes == []


# =============================================================================
# Device error notification
# =============================================================================


class TestDeviceErrors:
    def test_callback_receives_flags(self, protocol, simulator):
        received = []

        @protocol.on_device_error
        def on_error(address, error):
            received.append((address, error))

        simulator.set_error(2, ErrorStatus.OVERHEATING)

        assert protocol.read_register(2, Register.LED) == 0
        assert received == [(2, ErrorStatus.OVERHEATING)]

    def test_no_callback_without_error(self, protocol):
        received = []
        protocol.on_device_error(lambda address, error: received.append(address))

        protocol.ping(1)

        assert received == []

    def test_callback_not_reentered(self, protocol, simulator):
        calls = []

        @protocol.on_device_error
        def on_error(address, error):
            calls.append(address)
            # Traffic from inside the callback must not notify again
            assert protocol.ping(address)

        simulator.set_error(1, ErrorStatus.OVERLOAD)
        protocol.ping(1)

        assert calls == [1]

    def test_callback_exception_is_logged(self, protocol, simulator, caplog):
        def on_error(address, error):
            raise RuntimeError("callback failed")

        protocol.on_device_error(on_error)
        simulator.set_error(1, ErrorStatus.INPUT_VOLTAGE)

        assert protocol.ping(1) is True
        assert "callback failed" in caplog.text

    def test_clear_callbacks(self, protocol, simulator):
        received = []
        protocol.on_device_error(lambda address, error: received.append(address))
        protocol.clear_callbacks()
        simulator.set_error(1, ErrorStatus.RANGE)

        protocol.ping(1)

        assert received == []


# =============================================================================
# Diagnostics
# =============================================================================


class TestStatistics:
    def test_response_times_recorded(self, protocol):
        protocol.ping(1)
        protocol.ping(2)

        stats = protocol.statistics
        assert stats.response_count == 2
        assert stats.response_max_ms >= stats.response_average_ms >= 0.0

    def test_statistics_is_snapshot(self, protocol):
        snapshot = protocol.statistics
        protocol.ping(1)

        assert snapshot.response_count == 0
        assert protocol.statistics.response_count == 1

    def test_reset_statistics(self, protocol):
        protocol.ping(1)
        protocol.reset_statistics()

        assert protocol.statistics.response_count == 0
        assert protocol.dump_statistics() == []

    def test_dump_statistics(self, empty_stream):
        empty_stream.inject(b"\x00" + status_packet(5))
        protocol = DynamixelProtocol(empty_stream)
        protocol.read_response(5, 0)

        lines = protocol.dump_statistics()

        assert lines[0].startswith("Average ms per Dynamixel response: ")
        assert "1st Header Byte: 1" in lines
        assert "Unexpected ID: 1" in lines
