"""FastCS Dynamixel EPICS server entry point.

Launches a FastCS server that exposes the servos on a Dynamixel bus via
EPICS PVs.

Usage:
    python -m fastcs_dynamixel --port /dev/ttyUSB0 --pv-prefix BL99I-MO-DYN-01:
"""

import logging
from argparse import ArgumentParser
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .constants import BAUD_RATE, MAX_ADDRESS, MIN_ADDRESS, SYNC_PERIOD
from .controller import DynamixelController

__all__ = ["main"]


def main(args: Sequence[str] | None = None) -> None:
    """Launch the FastCS Dynamixel EPICS server."""
    parser = ArgumentParser(description="FastCS Dynamixel EPICS Server")
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=__version__,
    )
    parser.add_argument(
        "--port",
        type=str,
        required=True,
        help="Serial port path (e.g., /dev/ttyUSB0, COM3, sim://1,2,3)",
    )
    parser.add_argument(
        "--baudrate",
        type=int,
        default=BAUD_RATE,
        help=f"Serial baud rate (default: {BAUD_RATE})",
    )
    parser.add_argument(
        "--scan",
        type=int,
        nargs=2,
        default=[MIN_ADDRESS, MAX_ADDRESS],
        metavar=("LOW", "HIGH"),
        help=f"Servo address range to scan (default: {MIN_ADDRESS} {MAX_ADDRESS})",
    )
    parser.add_argument(
        "--sync-period",
        type=float,
        default=SYNC_PERIOD,
        help=f"Seconds between synchronized writes (default: {SYNC_PERIOD})",
    )
    parser.add_argument(
        "--pv-prefix",
        type=str,
        default="DYNAMIXEL",
        help="EPICS PV prefix (default: DYNAMIXEL)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--gui",
        type=str,
        default=None,
        help="Generate Phoebus screen file (e.g., dynamixel.bob)",
    )
    parser.add_argument(
        "--no-interactive",
        action="store_true",
        help="Run without the interactive shell",
    )

    parsed_args = parser.parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed_args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Import FastCS components (optional dependency for EPICS)
    try:
        from fastcs.launch import FastCS
        from fastcs.transports.epics.ca import EpicsCATransport
        from fastcs.transports.epics.options import (
            EpicsGUIOptions,
            EpicsIOCOptions,
        )
    except ImportError as e:
        print(f"Error: FastCS EPICS transport not available: {e}")
        print("Please install with: pip install 'fastcs[ca]'")
        return

    low, high = parsed_args.scan
    controller = DynamixelController(
        port=parsed_args.port,
        baudrate=parsed_args.baudrate,
        low=low,
        high=high,
        sync_period=parsed_args.sync_period,
    )

    gui_options = None
    if parsed_args.gui:
        gui_options = EpicsGUIOptions(
            output_path=Path(parsed_args.gui),
            title="Dynamixel Servo Bus",
        )

    transport = EpicsCATransport(
        gui=gui_options,
        epicsca=EpicsIOCOptions(pv_prefix=parsed_args.pv_prefix),
    )

    fastcs = FastCS(controller, [transport])
    fastcs.run(interactive=not parsed_args.no_interactive)


if __name__ == "__main__":
    main()
