"""Server-side message loop that plays the negotiating peer.

The loop pulls messages from an established session one at a time and answers
them by kind:

- ``CHANNEL_OPEN_REQUEST``: accept the channel, wait until it is ready for I/O,
  then hand it to the test supplied ``body``.
- ``CHANNEL_REQUEST`` and anything else: reply with a generic success.

End of stream (``get_next_message`` returning None) stops the loop without a
reply. Otherwise the loop stops when the session reports it is no longer
connected; the check happens *after* each message, so at least one read is
always attempted.

Errors from the engine propagate unchanged. In a forked role they end the
process with exit code 1.
"""

import enum
import logging
import os
from collections.abc import Callable

from sshharness.engine import Channel, Message, Server, Session
from sshharness.protocol import DEFAULT_CHANNEL_TIMEOUT, ChannelNotReady
from sshharness.waiting import wait_until

logger = logging.getLogger(__name__)

ChannelBody = Callable[[Channel], object]


class MessageKind(enum.Enum):
    CHANNEL_OPEN_REQUEST = "channel-open-request"
    CHANNEL_REQUEST = "channel-request"
    OTHER = "other"

    @classmethod
    def of(cls, message: Message) -> "MessageKind":
        """Classify an engine message; unknown kinds are ``OTHER``."""
        kind = message.kind
        if isinstance(kind, cls):
            return kind
        try:
            return cls(kind)
        except ValueError:
            return cls.OTHER


def wait_for_channel(channel: Channel, timeout: float = DEFAULT_CHANNEL_TIMEOUT) -> None:
    """Block until ``channel.is_ready()`` or raise ``ChannelNotReady``."""
    wait_until(channel.is_ready, timeout, error=ChannelNotReady, what="channel data")


def _open_channel(message: Message, body: ChannelBody, timeout: float) -> None:
    channel = message.accept_channel_open()
    logger.debug("Channel open request accepted")
    wait_for_channel(channel, timeout)
    body(channel)


def _reply_success(message: Message, body: ChannelBody, timeout: float) -> None:
    message.reply_success()


_HANDLERS: dict[MessageKind, Callable[[Message, ChannelBody, float], None]] = {
    MessageKind.CHANNEL_OPEN_REQUEST: _open_channel,
    MessageKind.CHANNEL_REQUEST: _reply_success,
    MessageKind.OTHER: _reply_success,
}


def server_session_loop(
    session: Session,
    body: ChannelBody,
    channel_timeout: float = DEFAULT_CHANNEL_TIMEOUT,
) -> int:
    """Answer messages on ``session`` until end of stream or disconnect.

    Args:
        session (Session): Established server-side session.
        body (ChannelBody): Called once per accepted channel, after it is ready.
        channel_timeout (float): Bound on waiting for each channel to be ready.

    Returns:
        (int): Number of messages handled (end of stream is not counted).

    Raises:
        ChannelNotReady: If an accepted channel never becomes ready.
        ProtocolError: Passed through from the engine.
    """
    handled = 0
    while True:
        message = session.get_next_message()
        if message is None:
            logger.debug("End of stream")
            break

        kind = MessageKind.of(message)
        logger.debug(f"Message {message.kind!r} handled as {kind.value!r}")
        _HANDLERS[kind](message, body, channel_timeout)
        handled += 1

        if not session.is_connected():
            logger.debug("Session disconnected")
            break

    return handled


def start_session_loop(session: Session, body: ChannelBody) -> None:
    """Run ``server_session_loop`` and end the process with exit code 0.

    Only meant for forked role processes: it never returns.
    """
    server_session_loop(session, body)
    # os._exit skips interpreter cleanup
    for handler in logging.getLogger().handlers:
        handler.flush()
    os._exit(0)


def accept_session(server: Server) -> Session:
    """Listen, accept one client, and run the key exchange."""
    server.listen()
    session = server.accept()
    session.exchange_keys()
    logger.info("Session accepted")
    return session


def start_server_loop(server: Server, body: ChannelBody) -> None:
    """Accept one session on ``server`` and serve it until it ends, then exit."""
    start_session_loop(accept_session(server), body)
