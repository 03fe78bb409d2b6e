#!/usr/bin/env python3
"""u-blox GNSS receiver tool: identify the receiver, wait for a fix, show diagnostics."""

from __future__ import annotations

import argparse
import logging
import sys

import serial

from connection import I2C_DEFAULT_ADDRESS, I2CTransport, PacketLog, SerialTransport, Transport
from driver import DriverConfig, UbxDriver
from state import DriverClosedError
from ubx import START_MODES
from version import NegotiationError


class LevelFormatter(logging.Formatter):
    """Plain messages for INFO, level-prefixed for everything else."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno == logging.INFO:
            return message
        return f"{record.levelname.capitalize()}: {message}"


def setup_logging(debug: bool, quiet: bool) -> logging.Logger:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LevelFormatter("%(message)s"))
    log = logging.getLogger("ubxdriver")
    if debug:
        log.setLevel(logging.DEBUG)
    elif quiet:
        log.setLevel(logging.WARNING)
    else:
        log.setLevel(logging.INFO)
    log.addHandler(handler)
    return log


def parse_i2c_address(value: str) -> int:
    """Parse an I2C address given in decimal or 0x-prefixed hex."""
    try:
        address = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid I2C address: {value}") from None
    if not 0x03 <= address <= 0x77:
        raise argparse.ArgumentTypeError(f"I2C address out of range: {value}")
    return address


def open_transport(args: argparse.Namespace, log: logging.Logger) -> Transport:
    if args.i2c_bus is not None:
        return I2CTransport(bus=args.i2c_bus, address=args.i2c_address, log=log)
    return SerialTransport(args.device, baudrate=args.speed, log=log)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="u-blox GNSS receiver tool (UBX protocol)",
    )
    parser.add_argument("-d", "--device", default="/dev/ttyACM0", help="Serial device path")
    parser.add_argument(
        "-s", "--speed", type=int, default=9600, help="Baud rate (default: 9600)"
    )
    parser.add_argument(
        "--i2c-bus",
        type=int,
        metavar="N",
        help="Use the I2C (DDC) interface on bus N instead of a serial device",
    )
    parser.add_argument(
        "--i2c-address",
        type=parse_i2c_address,
        default=I2C_DEFAULT_ADDRESS,
        metavar="ADDR",
        help=f"I2C address of the receiver (default: 0x{I2C_DEFAULT_ADDRESS:02X})",
    )
    parser.add_argument(
        "-l", "--packet-log", type=str, metavar="PATH", help="Log all packets to JSONL file"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress info messages (only show warnings and errors)",
    )

    # Receiver setup group
    setup_group = parser.add_argument_group("Receiver Setup")
    setup_group.add_argument(
        "--no-negotiate",
        action="store_true",
        help="Do not identify the receiver or change its message output",
    )
    setup_group.add_argument(
        "--keep-nmea",
        action="store_true",
        help="Leave NMEA output enabled during negotiation",
    )
    setup_group.add_argument(
        "--rate",
        type=int,
        metavar="MS",
        help="Set the measurement period in milliseconds",
    )
    setup_group.add_argument(
        "--reset",
        choices=sorted(START_MODES),
        help="Restart the receiver (hot, warm or cold start)",
    )

    # Query group
    query_group = parser.add_argument_group("Queries")
    query_group.add_argument(
        "--version-info", action="store_true", help="Show receiver and protocol version"
    )
    query_group.add_argument(
        "--wait-fix",
        type=float,
        nargs="?",
        const=0.0,
        metavar="SECONDS",
        help="Wait for a position fix and print it (optional timeout, default: wait forever)",
    )
    query_group.add_argument(
        "--diagnostics",
        action="store_true",
        help="Show satellite diagnostics (after --wait-fix, if given)",
    )

    args = parser.parse_args()

    if args.rate is not None and args.rate <= 0:
        print("Error: --rate must be positive", file=sys.stderr)
        return 1

    if args.no_negotiate and args.version_info:
        print("Error: --version-info requires negotiation", file=sys.stderr)
        return 1

    has_any_op = (
        args.version_info
        or args.wait_fix is not None
        or args.diagnostics
        or args.reset is not None
        or args.rate is not None
    )
    if not has_any_op:
        parser.print_help()
        return 0

    log = setup_logging(args.debug, args.quiet)

    config = DriverConfig(
        negotiate=not args.no_negotiate,
        disable_nmea=not args.keep_nmea,
        measurement_rate_ms=args.rate,
    )

    try:
        transport = open_transport(args, log)
    except (OSError, serial.SerialException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    packet_log = PacketLog(args.packet_log) if args.packet_log else None

    try:
        with UbxDriver(transport, config, packet_log=packet_log, log=log) as gps:
            if args.version_info and gps.profile:
                print(gps.profile.format())

            if args.reset is not None:
                gps.reset(args.reset)
                print(f"{args.reset.capitalize()} start reset initiated")

            if args.wait_fix is not None:
                timeout = args.wait_fix or None
                try:
                    location = gps.location(blocking=True, timeout=timeout)
                except TimeoutError:
                    print(f"Error: No fix within {args.wait_fix:g} s", file=sys.stderr)
                    return 1
                if location is not None:
                    print(location.format())
                ttff = gps.time_to_first_fix()
                if ttff:
                    print(f"Time to first fix: {ttff.total_seconds():.1f} s")

            if args.diagnostics:
                print(gps.diagnostics().format())

    except NegotiationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (OSError, serial.SerialException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except DriverClosedError:
        return 1
    except KeyboardInterrupt:
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
