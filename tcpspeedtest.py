#!/usr/bin/env python3
"""TCP upload/download throughput test tool."""

import argparse
import logging
import sys
from pathlib import Path

from common.protocol import (
    CONNECT_TIMEOUT_S,
    DEFAULT_IDLE_TIMEOUT_S,
    DEFAULT_ITERATIONS,
    DEFAULT_PAUSE_S,
    DEFAULT_PAYLOAD_SIZE,
    DEFAULT_PHASE_TIMEOUT_S,
    DEFAULT_PORT,
    MAX_ITERATION_TARGET,
    TRACE,
)
from initiator.runner import run_initiator
from listener.runner import run_listener


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {number}")
    return number


def _iteration_count(value: str) -> int:
    number = int(value)
    if not 1 <= number <= MAX_ITERATION_TARGET:
        raise argparse.ArgumentTypeError(
            f"must be between 1 and {MAX_ITERATION_TARGET}, got {number}"
        )
    return number


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add port, payload size, phase timeout and results dir arguments."""
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"TCP port (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "-s",
        "--payload-size",
        type=_positive_int,
        default=DEFAULT_PAYLOAD_SIZE,
        help=f"Bytes per upload/download, must match on both ends (default: {DEFAULT_PAYLOAD_SIZE})",
    )
    parser.add_argument(
        "--phase-timeout",
        type=_positive_float,
        default=DEFAULT_PHASE_TIMEOUT_S,
        help=f"Abort a running test after this many seconds without progress (default: {DEFAULT_PHASE_TIMEOUT_S:g})",
    )
    parser.add_argument(
        "-o",
        "--results-dir",
        type=Path,
        default=None,
        help="Write a CSV file per completed test into this directory",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Measure TCP upload and download throughput between two hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s listen                         Serve tests on the default port
  %(prog)s connect 10.0.0.2               Run 5 iterations of 1 MiB each way
  %(prog)s connect 10.0.0.2 -n 10 -s 4194304 -o results
""",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v debug, -vv trace)",
    )

    subparsers = parser.add_subparsers(dest="mode")

    listen_parser = subparsers.add_parser("listen", help="Accept connections and serve tests")
    listen_parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Address to bind (default: 0.0.0.0)",
    )
    listen_parser.add_argument(
        "--idle-timeout",
        type=_positive_float,
        default=DEFAULT_IDLE_TIMEOUT_S,
        help="Drop connections that request no test for this many seconds (default: never)",
    )
    _add_common_args(listen_parser)

    connect_parser = subparsers.add_parser("connect", help="Connect to a listener and run a test")
    connect_parser.add_argument("host", type=str, help="Listener host name or address")
    connect_parser.add_argument(
        "-n",
        "--iterations",
        type=_iteration_count,
        default=DEFAULT_ITERATIONS,
        help=f"Upload+download iterations (default: {DEFAULT_ITERATIONS})",
    )
    connect_parser.add_argument(
        "--pause",
        type=float,
        default=DEFAULT_PAUSE_S,
        help=(
            "Seconds to pause between iterations, must be less than the "
            f"listener's phase timeout (default: {DEFAULT_PAUSE_S:g})"
        ),
    )
    connect_parser.add_argument(
        "--connect-timeout",
        type=_positive_float,
        default=CONNECT_TIMEOUT_S,
        help=f"Connection timeout in seconds (default: {CONNECT_TIMEOUT_S:g})",
    )
    _add_common_args(connect_parser)

    args = parser.parse_args(argv)

    level = {0: logging.INFO, 1: logging.DEBUG}.get(args.verbose, TRACE)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.mode == "listen":
        return run_listener(
            host=args.host,
            port=args.port,
            payload_size=args.payload_size,
            phase_timeout_s=args.phase_timeout,
            results_dir=args.results_dir,
            idle_timeout_s=args.idle_timeout,
        )

    if args.mode == "connect":
        if args.pause < 0:
            parser.error("--pause must be >= 0")
        if args.pause >= args.phase_timeout:
            parser.error(
                f"--pause ({args.pause:g}) must be less than --phase-timeout ({args.phase_timeout:g})"
            )
        return run_initiator(
            host=args.host,
            port=args.port,
            payload_size=args.payload_size,
            iterations=args.iterations,
            pause_s=args.pause,
            phase_timeout_s=args.phase_timeout,
            connect_timeout_s=args.connect_timeout,
            results_dir=args.results_dir,
        )

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
