"""One-shot, one-line mailbox between two unrelated harness processes.

A rendezvous channel is a Unix-domain stream socket at a unique filesystem
path. The side that wants a value listens on the path; the side that produces
the value waits for the path to appear, connects, and writes exactly one line.

Ordering:
1) Reader: ``listen()`` creates the path.
2) Writer: ``send()`` polls for the path (bounded, exponential backoff), connects,
   writes the line, then half-closes its write side and waits for the reader to
   hang up (bounded by ``grace``). The reader never sees a reset instead of data.
3) Reader: ``receive()`` accepts, waits for the line to be readable (``select``,
   bounded), reads it, closes and unlinks the path.

Either side raises ``RendezvousTimeout`` instead of blocking forever. A channel
object is single use.

Main functions:
    make_rendezvous_path:
        Generate a unique socket path.

    RendezvousChannel:
        The channel itself.

    send_result / receive_result:
        JSON (de)serialization of the exchanged value.
"""

import contextlib
import json
import logging
import os
import select
import socket
import tempfile
import time
import uuid
from typing import Any

from sshharness.protocol import (
    DEFAULT_GRACE_PERIOD,
    DEFAULT_RENDEZVOUS_TIMEOUT,
    ProtocolError,
    RendezvousTimeout,
    TransportError,
    receive_message,
    send_message,
)
from sshharness.waiting import wait_until

logger = logging.getLogger(__name__)


def make_rendezvous_path(directory: str | None = None) -> str:
    """Return a socket path that no other rendezvous uses.

    Args:
        directory (str | None): Parent directory (default: the system temp dir).
            Keep it short, Unix socket paths are limited to about 100 bytes.

    Returns:
        (str): Path that does not exist yet.
    """
    directory = directory or tempfile.gettempdir()
    return os.path.join(directory, f"sshharness-{os.getpid()}-{uuid.uuid4().hex[:12]}.sock")


class RendezvousChannel:
    """Single-use line mailbox over a Unix-domain socket path.

    Args:
        path (str | None): Socket path; a fresh one is generated when None.
        timeout (float): Default bound, in seconds, of every wait.
        grace (float): How long the writer waits for the reader to hang up.
    """

    def __init__(
        self,
        path: str | None = None,
        timeout: float = DEFAULT_RENDEZVOUS_TIMEOUT,
        grace: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.path = path or make_rendezvous_path()
        self.timeout = timeout
        self.grace = grace
        self._listener: socket.socket | None = None
        self._writer: socket.socket | None = None
        self._owner_pid: int | None = None
        self._used = False

    def __enter__(self) -> "RendezvousChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _claim(self) -> None:
        if self._used:
            raise RuntimeError(f"Rendezvous channel {self.path!r} already used")
        self._used = True

    def listen(self) -> None:
        """Bind and listen on ``path``. Idempotent."""
        if self._listener is not None:
            return

        # stale socket left by a crashed run
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.path)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(self.path)
            sock.listen(1)
        except OSError as e:
            sock.close()
            raise TransportError(f"Could not listen on {self.path!r}: {e}") from e

        self._listener = sock
        self._owner_pid = os.getpid()
        logger.debug(f"Rendezvous listening on {self.path!r}")

    def close(self) -> None:
        """Close the listener and remove the path if this process created it."""
        if self._listener is None:
            return
        self._listener.close()
        self._listener = None
        if self._owner_pid == os.getpid():
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.path)

    def receive(self, timeout: float | None = None) -> str:
        """Wait for the writer and return its line (without the newline).

        Listens first if ``listen()`` was not called yet. The channel is closed
        afterwards whatever happens.

        Args:
            timeout (float | None): Bound on the whole exchange (default: ``self.timeout``).

        Returns:
            (str): The received line.

        Raises:
            RendezvousTimeout: If no writer connects or writes within ``timeout``.
            ProtocolError: If the line is not valid UTF-8 or too long.
            TransportError: If the writer hangs up mid-line.
        """
        self._claim()
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        self.listen()

        try:
            listener = self._listener
            readable, _, _ = select.select([listener], [], [], timeout)
            if not readable:
                raise RendezvousTimeout(
                    f"No writer connected to {self.path!r} within {timeout}s"
                )
            conn, _ = listener.accept()
            with conn:
                remaining = max(deadline - time.monotonic(), 0)
                readable, _, _ = select.select([conn], [], [], remaining)
                if not readable:
                    raise RendezvousTimeout(
                        f"Writer on {self.path!r} sent nothing within {timeout}s"
                    )
                conn.settimeout(max(deadline - time.monotonic(), self.grace))
                line = receive_message(conn)
        finally:
            self.close()

        logger.debug(f"Rendezvous received {line!r}")
        return line

    def _try_connect(self) -> bool:
        if not os.path.exists(self.path):
            return False
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self.path)
        except (FileNotFoundError, ConnectionRefusedError):
            # path exists but the reader is not listening yet
            sock.close()
            return False
        self._writer = sock
        return True

    def send(self, text: str, timeout: float | None = None) -> None:
        """Connect to the reader and write ``text`` as one line.

        Args:
            text (str): Single-line payload.
            timeout (float | None): Bound on waiting for the path (default: ``self.timeout``).

        Raises:
            RendezvousTimeout: If the path never appears or never accepts.
            ProtocolError: If ``text`` spans several lines or is not encodable.
            TransportError: If writing fails.
        """
        self._claim()
        timeout = self.timeout if timeout is None else timeout

        wait_until(
            self._try_connect,
            timeout,
            error=RendezvousTimeout,
            what=f"rendezvous path {self.path!r}",
        )

        with self._writer as sock:
            send_message(text, sock)
            sock.shutdown(socket.SHUT_WR)

            # the reader closes once it has the line
            sock.settimeout(self.grace)
            try:
                sock.recv(1)
            except OSError as e:
                logger.debug(f"Reader on {self.path!r} did not hang up: {e}")

        logger.debug(f"Rendezvous sent {text!r}")


def send_result(channel: RendezvousChannel, value: Any, timeout: float | None = None) -> None:
    """Serialize ``value`` as JSON and send it through ``channel``."""
    try:
        text = json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Result is not serializable: {e}") from e
    channel.send(text, timeout)


def receive_result(channel: RendezvousChannel, timeout: float | None = None) -> Any:
    """Receive one line from ``channel`` and decode it as JSON."""
    line = channel.receive(timeout)
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Result is not valid JSON: {line!r}") from e
