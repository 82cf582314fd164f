"""Interfaces of the secure-session engine driven by the harness.

The harness never implements key exchange, encryption or authentication. It
only talks to the engine through the structural types below, so any SSH library
binding (or a test double) that provides these methods can be plugged into a
``TopologyRunner`` or the dispatch loop.

Engine failures are expected to be raised as ``sshharness.protocol.ProtocolError``
(or a subclass); the harness lets them propagate unchanged.
"""

from typing import Any, Protocol

from sshharness.roles import ClientConfig, ServerConfig


class Channel(Protocol):
    def is_ready(self) -> bool: ...

    def read(self, size: int = -1) -> bytes: ...

    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class Message(Protocol):
    """One incoming request. ``kind`` is engine specific (usually a string)."""

    kind: Any

    def reply_success(self) -> None: ...

    def accept_channel_open(self) -> Channel: ...


class Session(Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def exchange_keys(self) -> None: ...

    def get_next_message(self) -> Message | None:
        """Return the next message, or None at end of stream."""
        ...

    def is_connected(self) -> bool: ...


class Server(Protocol):
    def listen(self) -> None: ...

    def accept(self) -> Session: ...


class Engine(Protocol):
    def make_session(self, config: ClientConfig) -> Session: ...

    def make_server(self, config: ServerConfig) -> Server: ...
