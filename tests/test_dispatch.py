import pytest
from helpers import FakeChannel, FakeMessage, FakeServer, FakeSession

from sshharness import dispatch
from sshharness.dispatch import MessageKind
from sshharness.protocol import ChannelNotReady, ProtocolError


class ExitCalled(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.code = code


@pytest.fixture
def fake_exit(monkeypatch):
    def _exit(code):
        raise ExitCalled(code)

    monkeypatch.setattr(dispatch.os, "_exit", _exit)


class TestMessageKind:
    @pytest.mark.parametrize(
        "kind, expected",
        [
            ("channel-open-request", MessageKind.CHANNEL_OPEN_REQUEST),
            ("channel-request", MessageKind.CHANNEL_REQUEST),
            (MessageKind.CHANNEL_REQUEST, MessageKind.CHANNEL_REQUEST),
            ("service-request", MessageKind.OTHER),
            (42, MessageKind.OTHER),
        ],
    )
    def test_of(self, kind, expected):
        assert MessageKind.of(FakeMessage(kind)) is expected


class TestWaitForChannel:
    def test_ready_channel(self):
        channel = FakeChannel(ready_after=3)

        dispatch.wait_for_channel(channel, timeout=5)

        assert channel.polls == 4

    def test_never_ready(self):
        with pytest.raises(ChannelNotReady):
            dispatch.wait_for_channel(FakeChannel(ready_after=10**9), timeout=0.05)


class TestServerSessionLoop:
    def test_channel_body_runs_once_before_eof(self):
        channel = FakeChannel(ready_after=2)
        open_request = FakeMessage("channel-open-request", channel)
        data = FakeMessage("data")
        session = FakeSession([open_request, data])
        seen = []

        def body(ch):
            seen.append((ch, ch.is_ready(), session.reads))
            ch.write(ch.read())

        handled = dispatch.server_session_loop(session, body)

        assert handled == 2
        assert seen == [(channel, True, 1)]
        assert channel.written == [b"data"]
        assert open_request.accepted
        assert data.replied
        # the third read returned end of stream
        assert session.reads == 3

    def test_channel_request_gets_success(self):
        request = FakeMessage("channel-request")
        session = FakeSession([request])

        dispatch.server_session_loop(session, lambda ch: None)

        assert request.replied
        assert not request.accepted

    def test_eof_gets_no_reply(self):
        session = FakeSession([])

        assert dispatch.server_session_loop(session, lambda ch: None) == 0
        assert session.reads == 1

    def test_closed_session_still_reads_one_message(self):
        first = FakeMessage("other")
        second = FakeMessage("other")
        session = FakeSession([first, second], connected=False)

        handled = dispatch.server_session_loop(session, lambda ch: None)

        assert handled == 1
        assert first.replied
        assert not second.replied

    def test_stops_when_peer_disconnects(self):
        messages = [FakeMessage("other") for _ in range(5)]
        session = FakeSession(messages, disconnect_after=2)

        assert dispatch.server_session_loop(session, lambda ch: None) == 2

    def test_channel_not_ready_propagates(self):
        channel = FakeChannel(ready_after=10**9)
        session = FakeSession([FakeMessage("channel-open-request", channel)])

        with pytest.raises(ChannelNotReady):
            dispatch.server_session_loop(session, lambda ch: None, channel_timeout=0.05)

    def test_protocol_error_passes_through(self):
        error = ProtocolError("bad packet")
        session = FakeSession([FakeMessage("other"), error])

        with pytest.raises(ProtocolError) as e:
            dispatch.server_session_loop(session, lambda ch: None)

        assert e.value is error


class TestStartSessionLoop:
    def test_exits_zero_after_loop(self, fake_exit):
        message = FakeMessage("other")
        session = FakeSession([message])

        with pytest.raises(ExitCalled) as e:
            dispatch.start_session_loop(session, lambda ch: None)

        assert e.value.code == 0
        assert message.replied

    def test_errors_skip_the_exit(self, fake_exit):
        session = FakeSession([ProtocolError("bad packet")])

        with pytest.raises(ProtocolError):
            dispatch.start_session_loop(session, lambda ch: None)


class TestServerLoop:
    def test_accept_session_order(self):
        server = FakeServer()

        session = dispatch.accept_session(server)

        assert session is server.session
        assert server.calls == ["listen", "accept"]
        assert session.calls == ["exchange_keys"]

    def test_start_server_loop(self, fake_exit):
        channel = FakeChannel()
        server = FakeServer(
            session=FakeSession([FakeMessage("channel-open-request", channel)])
        )
        bodies = []

        with pytest.raises(ExitCalled) as e:
            dispatch.start_server_loop(server, bodies.append)

        assert e.value.code == 0
        assert bodies == [channel]
