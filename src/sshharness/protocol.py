"""Shared line framing and error types for the harness.

Harness processes exchange at most one **newline-delimited UTF-8** line:

- Every outbound message is a ``str`` that is UTF-8 encoded and ends with ``"\\n"``.
- Every inbound message is read until a trailing newline is seen, then decoded
  as UTF-8 and returned **without** the newline.
- Multiline payloads are intentionally unsupported.

This module raises:
- ``ProtocolError`` when the peer violates message framing/encoding rules
  (non-bytes from socket, invalid UTF-8, line too long, etc.). Errors surfaced by
  the session engine are expected to use the same type and pass through unchanged.
- ``TransportError`` for socket failures (timeouts, disconnects, OS errors).

The harness-specific errors (``PortExhausted``, ``RoleFailure``,
``RendezvousTimeout``, ``ChannelNotReady``) share the ``HarnessError`` base.
"""

import argparse
import logging
import socket


class ProtocolError(ValueError):
    """Peer violated the newline-delimited UTF-8 protocol."""


class TransportError(RuntimeError):
    """Socket error while sending/receiving."""


class HarnessError(RuntimeError):
    """Base class for failures raised by the harness itself."""


class PortExhausted(HarnessError):
    """No unused TCP port was found before the end of the port range."""


class RoleFailure(HarnessError):
    """A forked role exited with a non-zero exit code."""

    def __init__(self, pid: int | None, exitcode: int | None) -> None:
        super().__init__(f"Role process {pid} exited with code {exitcode}")
        self.pid = pid
        self.exitcode = exitcode


class RendezvousTimeout(HarnessError, TimeoutError):
    """The peer of a rendezvous channel never showed up or never wrote."""


class ChannelNotReady(HarnessError, TimeoutError):
    """A channel accepted by the server never became ready for I/O."""


MAX_LINE_LENGTH = 64 * 1024
MAX_PORT = 65535
DEFAULT_HOST = "127.0.0.1"
DEFAULT_USER = "bob"
DEFAULT_TIMEOUT = 10
DEFAULT_START_PORT = 12400
DEFAULT_RENDEZVOUS_TIMEOUT = 30.0
DEFAULT_GRACE_PERIOD = 1.0
DEFAULT_CHANNEL_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


def _parse_positive_int(s: str) -> int:
    """Parse a CLI argument as a positive integer (> 0).

    Intended for use as an ``argparse`` ``type=...`` function.

    Args:
        s (str): Flag from the command line.

    Returns:
        (int): Parsed positive integer.

    Raises:
        argparse.ArgumentTypeError: If ``s`` is not an integer or is <= 0.

    Examples:
        >>> _parse_positive_int("6")
        6
    """
    try:
        n = int(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError("must be an integer") from e
    if n <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return n


def send_message(string_to_send: str, sock: socket.socket) -> None:
    """Send one newline-delimited UTF-8 message.

    The function guarantees:
    - the payload is a ``str`` (otherwise ``ProtocolError``),
    - it ends with a newline (adds one if missing),
    - it does not contain any other newline,
    - it can be encoded as UTF-8,
    - it is fully transmitted using ``sendall``.

    Args:
        string_to_send (str): Message to send (with or without a trailing ``"\\n"``).
        sock (socket.socket): Connected socket to send on.

    Raises:
        ProtocolError: If the payload is not a single-line ``str`` or cannot be
            UTF-8 encoded.
        TransportError: If the underlying socket fails while sending.

    Examples:
        >>> import socket
        >>> a, b = socket.socketpair()
        >>> try:
        ...     send_message("42", a)
        ...     b.recv(16)
        ... finally:
        ...     a.close(); b.close()
        b'42\\n'
    """
    if not isinstance(string_to_send, str):
        raise ProtocolError(
            f"Send failed: expected str, got {type(string_to_send).__name__}"
        )

    # ensure that the string ends with endline
    if not string_to_send.endswith("\n"):
        string_to_send += "\n"

    if "\n" in string_to_send[:-1]:
        raise ProtocolError("Send failed: payload spans more than one line")

    try:
        bstring_to_send = string_to_send.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ProtocolError(f"Send failed: could not encode UTF-8: {e}") from e

    try:
        sock.sendall(bstring_to_send)
    except (TimeoutError, OSError) as e:
        string_to_send_no_newline = string_to_send.rstrip("\n")
        raise TransportError(
            f"Send failed while sending {string_to_send_no_newline!r}: {type(e).__name__}: {e}"
        ) from e


def receive_message(sock: socket.socket) -> str:
    """Receive one newline-delimited UTF-8 message.

    Reads from the socket until a newline byte is observed, then decodes as UTF-8
    and returns the string without the trailing newline.

    Args:
        sock (socket.socket): Connected socket to read from.

    Returns:
        (str): The decoded message with the trailing newline removed.

    Raises:
        ProtocolError: If the peer sends non-bytes, invalid UTF-8, or a line that
            exceeds ``MAX_LINE_LENGTH``.
        TransportError: If the peer closes the connection, a timeout occurs, or
            another OS error happens.

    Examples:
        >>> import socket
        >>> a, b = socket.socketpair()
        >>> try:
        ...     a.sendall(b"true\\n")
        ...     receive_message(b)
        ... finally:
        ...     a.close(); b.close()
        'true'
    """
    buf = bytearray()
    try:
        while True:
            chunk = sock.recv(1024)

            if not chunk:
                raise TransportError("Receive failed: peer closed connection")

            if not isinstance(chunk, bytes):
                raise ProtocolError(
                    f"Receive failed: expected bytes, got {type(chunk).__name__}"
                )

            buf += chunk
            if len(buf) > MAX_LINE_LENGTH:
                raise ProtocolError("Receive failed: line too long")

            if buf.endswith(b"\n"):
                break

        try:
            return buf.decode("utf-8").rstrip("\n")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Receive failed: invalid UTF-8: {e}") from e

    except TimeoutError as e:
        raise TransportError(f"Receive timeout: {e}") from e

    except (ProtocolError, TransportError):
        raise

    except Exception as e:
        raise TransportError(f"Receive failed: {type(e).__name__}: {e}") from e
