"""Terminal handshake that puts a CM-5 controller into toss mode.

A CM-5 controller box only passes packets through to its servos in
"toss mode". From manage mode the host gets there by talking to the CM-5's
text terminal:

  Host                       CM-5
  ────                       ────
  CR            ──────────►
                ◄──────────  "[CM-5 Version 1.15]..." (first CR, rescans bus)
                ◄──────────  "[CID:001(0x01)] "      (prompt)
  "t" CR        ──────────►
                ◄──────────  "... Toss Mode"

A CM-5 that has already scanned answers the first CR with the prompt
directly.
"""

import enum
import logging

from .protocol import ProtocolError
from .transport import ByteStream

logger = logging.getLogger(__name__)

# The CM-5 rescans the bus after printing its version string
SCAN_TIMEOUT = 0.75


class HandshakeError(ProtocolError):
    """Raised when a CM-5 answers but cannot be put into toss mode."""

    pass


class _State(enum.Enum):
    SEND_CR = enum.auto()
    AWAIT_BANNER = enum.auto()
    AWAIT_PROMPT = enum.auto()
    AWAIT_PROMPT_END = enum.auto()
    AWAIT_TOSS_MODE = enum.auto()
    DONE = enum.auto()


def enter_toss_mode(stream: ByteStream) -> bool:
    """Switch a CM-5 in manage mode into toss (pass-through) mode.

    Args:
        stream: Byte stream connected to the CM-5

    Returns:
        True if the CM-5 confirmed toss mode, False if nothing answered

    Raises:
        HandshakeError: If a CM-5 answered but stopped responding, which
            happens when it is in play or program mode
    """
    saved_timeout = stream.timeout
    state = _State.SEND_CR
    received = ""

    try:
        while state is not _State.DONE:
            if state is _State.SEND_CR:
                stream.write(b"\r")
                state = _State.AWAIT_BANNER
                continue

            received += chr(stream.read_byte())

            if state in (_State.AWAIT_BANNER, _State.AWAIT_PROMPT):
                if state is _State.AWAIT_BANNER and received.endswith("[CM"):
                    logger.debug("CM-5 version banner seen, waiting for bus scan")
                    stream.timeout = SCAN_TIMEOUT
                    state = _State.AWAIT_PROMPT
                if received.endswith("[CI"):
                    stream.timeout = saved_timeout
                    state = _State.AWAIT_PROMPT_END
            elif state is _State.AWAIT_PROMPT_END:
                if received.endswith("] "):
                    stream.write(b"t\r")
                    state = _State.AWAIT_TOSS_MODE
            elif state is _State.AWAIT_TOSS_MODE:
                if received.endswith("Toss Mode"):
                    state = _State.DONE
    except TimeoutError:
        if state is not _State.AWAIT_BANNER:
            raise HandshakeError("CM-5 detected, but not in Manage Mode") from None
        logger.debug("No CM-5 answered the handshake")
        return False
    finally:
        stream.timeout = saved_timeout

    logger.info("CM-5 is in toss mode")
    return True
