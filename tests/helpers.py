"""Test helpers used by the unit tests.

These classes provide lightweight stand-ins for the secure-session engine so
tests can exercise the dispatch loop and the runner without a real SSH
implementation.

Classes:
    FakeChannel:
        Channel that becomes ready after a given number of polls and records
        what the body writes.

    FakeMessage:
        Message with a ``kind`` that records how it was answered.

    FakeSession:
        Session replaying a fixed list of messages; ``None`` marks end of stream.

    FakeServer / FakeEngine:
        Enough of the engine factory for ``TopologyRunner(engine=...)``.
"""

from sshharness.protocol import ProtocolError


class FakeChannel:
    def __init__(self, ready_after: int = 0, data: bytes = b"data") -> None:
        self.ready_after = ready_after
        self.polls = 0
        self.data = data
        self.written: list[bytes] = []
        self.closed = False

    def is_ready(self) -> bool:
        self.polls += 1
        return self.polls > self.ready_after

    def read(self, size: int = -1) -> bytes:
        return self.data

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed = True


class FakeMessage:
    def __init__(self, kind, channel: FakeChannel | None = None) -> None:
        self.kind = kind
        self.channel = channel or FakeChannel()
        self.replied = False
        self.accepted = False

    def reply_success(self) -> None:
        self.replied = True

    def accept_channel_open(self) -> FakeChannel:
        self.accepted = True
        return self.channel


class FakeSession:
    """Replays ``messages``; disconnects after ``disconnect_after`` reads if set."""

    def __init__(
        self,
        messages=(),
        connected: bool = True,
        disconnect_after: int | None = None,
        connect_failures: int = 0,
    ) -> None:
        self.messages = list(messages)
        self.connected = connected
        self.disconnect_after = disconnect_after
        self.connect_failures = connect_failures
        self.reads = 0
        self.calls: list[str] = []

    def connect(self) -> None:
        self.calls.append("connect")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ProtocolError("connection refused")
        self.connected = True

    def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    def exchange_keys(self) -> None:
        self.calls.append("exchange_keys")

    def get_next_message(self):
        self.reads += 1
        if self.disconnect_after is not None and self.reads >= self.disconnect_after:
            self.connected = False
        if not self.messages:
            return None
        message = self.messages.pop(0)
        if isinstance(message, Exception):
            raise message
        return message

    def is_connected(self) -> bool:
        return self.connected


class FakeServer:
    def __init__(self, config=None, session: FakeSession | None = None) -> None:
        self.config = config
        self.session = session or FakeSession()
        self.calls: list[str] = []

    def listen(self) -> None:
        self.calls.append("listen")

    def accept(self) -> FakeSession:
        self.calls.append("accept")
        return self.session


class FakeEngine:
    def make_session(self, config) -> FakeSession:
        session = FakeSession(connected=False)
        session.config = config
        return session

    def make_server(self, config) -> FakeServer:
        return FakeServer(config)
