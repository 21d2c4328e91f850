"""Protocol constants and default settings for Dynamixel networks."""

import enum

# Serial link defaults (AX-12 factory setting is 1 Mbps)
BAUD_RATE = 1_000_000
READ_TIMEOUT = 0.05  # seconds

# Packet framing
HEADER_BYTE = 0xFF
HEADER = bytes([HEADER_BYTE, HEADER_BYTE])

# Addressing
MIN_ADDRESS = 0
MAX_ADDRESS = 253
BROADCAST_ID = 254
INVALID_ADDRESS = 0xFF  # returned by read_packet when no packet was framed
DEFAULT_ADDRESS = 1  # address a servo falls back to after a Reset

# A servo needs ~250ms to come back after a Reset instruction
RESET_RECOVERY_DELAY = 0.3

# FastCS poll periods (seconds)
FAST_UPDATE = 0.2
SLOW_UPDATE = 1.0
SYNC_PERIOD = 0.05


class Instruction(enum.IntEnum):
    """Instruction codes carried in a command packet."""

    PING = 0x01
    READ_DATA = 0x02
    WRITE_DATA = 0x03
    REG_WRITE = 0x04  # deferred until ACTION
    ACTION = 0x05
    RESET = 0x06
    SYNC_WRITE = 0x83
