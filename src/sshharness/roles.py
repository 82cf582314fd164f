"""Build client and server role configurations for a test case.

Every value except the server port is fixed, so two runs of the same test see
the same roles. The server port comes from a counter owned by a ``RoleFactory``:
it is incremented *before* each server configuration is built, so no two servers
made by one factory share a port. Nothing protects against collisions between
processes; tests are expected to create their roles from one controlling process.

Fixture paths are derived from ``abs_top_srcdir`` and ``abs_top_builddir``,
read once when the module is imported.
"""

import enum
import logging
import os
from dataclasses import dataclass

from sshharness.ports import get_unused_port
from sshharness.protocol import DEFAULT_HOST, DEFAULT_TIMEOUT, DEFAULT_USER

TOP_SRCDIR = os.getenv("abs_top_srcdir", os.getcwd())
TOP_BUILDDIR = os.getenv("abs_top_builddir", os.getcwd())

DEFAULT_KNOWNHOSTS = os.path.join(TOP_BUILDDIR, "tmp", "knownhosts")
DEFAULT_RSA_KEY = os.path.join(TOP_SRCDIR, "tests", "keys", "rsakey")
DEFAULT_DSA_KEY = os.path.join(TOP_SRCDIR, "tests", "keys", "dsakey")

logger = logging.getLogger(__name__)


class Verbosity(enum.Enum):
    """Log verbosity levels understood by the session engine."""

    NOLOG = 0
    RARE = 1
    PROTOCOL = 2
    PACKET = 3
    FUNCTIONS = 4

    def to_logging_level(self) -> int:
        """Map to the closest :mod:`logging` level."""
        return {
            Verbosity.NOLOG: logging.CRITICAL + 1,
            Verbosity.RARE: logging.WARNING,
            Verbosity.PROTOCOL: logging.INFO,
            Verbosity.PACKET: logging.DEBUG,
            Verbosity.FUNCTIONS: logging.DEBUG,
        }[self]


@dataclass(frozen=True)
class ClientConfig:
    """Where and how the client role connects."""

    host: str
    port: int
    user: str
    timeout: int
    knownhosts: str
    verbosity: Verbosity


@dataclass(frozen=True)
class ServerConfig:
    """Where the server role listens and which host keys it presents."""

    bindaddr: str
    bindport: int
    rsakey: str
    dsakey: str
    verbosity: Verbosity


class RoleFactory:
    """Owner of the server port counter.

    Args:
        port (int | None): Initial counter value. When None, the first unused
            port is looked up on first use, so the first server gets the port
            right after it.
    """

    def __init__(self, port: int | None = None) -> None:
        self._port = port

    @property
    def port(self) -> int:
        """Port of the most recently created server role."""
        if self._port is None:
            self._port = get_unused_port()
        return self._port

    def make_client_role(self) -> ClientConfig:
        """Return a client configuration targeting the current server port."""
        return ClientConfig(
            host=DEFAULT_HOST,
            port=self.port,
            user=DEFAULT_USER,
            timeout=DEFAULT_TIMEOUT,
            knownhosts=DEFAULT_KNOWNHOSTS,
            verbosity=Verbosity.RARE,
        )

    def make_server_role(self) -> ServerConfig:
        """Bump the port counter, then return a server configuration bound to it."""
        self._port = self.port + 1
        logger.debug(f"Server role bound to {DEFAULT_HOST!r}:{self._port!r}")
        return ServerConfig(
            bindaddr=DEFAULT_HOST,
            bindport=self._port,
            rsakey=DEFAULT_RSA_KEY,
            dsakey=DEFAULT_DSA_KEY,
            verbosity=Verbosity.RARE,
        )


default_role_factory = RoleFactory()


def make_client_role() -> ClientConfig:
    return default_role_factory.make_client_role()


def make_server_role() -> ServerConfig:
    return default_role_factory.make_server_role()
