"""Hand out TCP ports that nothing on the loopback interface is using.

Test cases running side by side (several pytest workers, a stray server from a
previous run) must not try to bind the same port. The allocator probes the OS
with a real ``bind`` and remembers the last port it handed out so repeated
scans stay short.

Main functions:
    is_port_in_use:
        Probe a port with a throwaway bind.

    PortAllocator.get_unused_port:
        Scan upward from the last handed out port.

    get_unused_port:
        Same, on the process-wide default allocator.

    main:
        CLI entry point printing one unused port.
"""

import argparse
import logging
import socket
import sys
from collections.abc import Sequence

from sshharness.logging_utils import configure_logging
from sshharness.protocol import (
    DEFAULT_HOST,
    DEFAULT_START_PORT,
    MAX_PORT,
    PortExhausted,
    _parse_positive_int,
)

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = DEFAULT_HOST) -> bool:
    """Return True if binding ``host:port`` fails.

    The probe socket is always closed before returning.

    Args:
        port (int): TCP port to probe.
        host (str): Address to bind (default: loopback).

    Returns:
        (bool): True if the port is taken, False if the bind succeeded.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind((host, port))
        except OSError as e:
            logger.debug(f"Port {port!r} in use: {e}")
            return True
    return False


class PortAllocator:
    """Linear scanner over the TCP port range.

    ``start`` is the next candidate; it is moved to every port handed out so the
    next scan starts where the previous one stopped.
    """

    def __init__(self, start: int = DEFAULT_START_PORT, host: str = DEFAULT_HOST):
        self.start = start
        self.host = host

    def get_unused_port(self) -> int:
        """Return the first port at or above ``start`` that can be bound.

        Returns:
            (int): A port that was free at the moment of the probe.

        Raises:
            PortExhausted: If every port up to 65535 is taken.
        """
        port = self.start
        while is_port_in_use(port, self.host):
            port += 1
            if port > MAX_PORT:
                raise PortExhausted(
                    f"No unused port between {self.start} and {MAX_PORT}"
                )
        self.start = port
        logger.debug(f"Unused port: {port!r}")
        return port


_default_allocator = PortAllocator()


def get_unused_port() -> int:
    """Return an unused port from the process-wide allocator."""
    return _default_allocator.get_unused_port()


def build_port_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser for ``sshharness-port``.

    Returns:
        (argparse.ArgumentParser) configured with allocator options.

    Examples:
        >>> p = build_port_parser()
        >>> ns = p.parse_args(["--start", "20000"])
        >>> ns.start
        20000
    """
    parser = argparse.ArgumentParser(
        prog="sshharness-port",
        description="Print a TCP port that is not in use on the given host.",
    )
    parser.add_argument(
        "--start",
        default=DEFAULT_START_PORT,
        type=_parse_positive_int,
        help=f"first candidate port (default: {DEFAULT_START_PORT})",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"address to probe (default: {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the ``sshharness-port`` CLI.

    Args:
        argv (Sequence[str] | None): Optional argument vector (defaults to ``sys.argv[1:]``).

    Returns:
        (int): Exit code, 0 on success and 1 if the range is exhausted.
    """
    ns = build_port_parser().parse_args(argv)
    configure_logging(level=ns.log_level)

    try:
        port = PortAllocator(ns.start, ns.host).get_unused_port()
    except PortExhausted as e:
        logger.error(f"{e}")
        return 1

    print(port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
