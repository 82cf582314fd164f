"""Run the client and server roles of a test case in separate processes.

Roles are forked with ``os.fork`` so the two peers never share memory: whatever
one role learns it has to learn over the wire. A forked role exits with code 0
when its procedure returns and with code 1 when it raises; the traceback goes to
the log file, nothing is printed. The child always leaves through ``os._exit``,
so it never runs the caller's cleanup (pytest teardown, atexit hooks). The role
that stays in the calling process returns (or raises) normally.

Children are fire-and-forget: the calling process never waits for them unless
it asks to with ``TopologyRunner.reap``, and can exit while a role is still
blocked in ``accept``.

Topologies:
    run_client_test:
        The child is the protocol server, the caller is the client.

    run_client_test_separate_process:
        Like ``run_client_test``, but the client procedure runs in its own
        forked process too; its result comes back over a rendezvous channel and
        only ``pred(result)`` runs in the caller.

    run_server_test:
        The child is the protocol client, the caller is the server.

The module-level functions use a process-wide runner sharing the port counter
of ``sshharness.roles.make_client_role``/``make_server_role``.
"""

import logging
import os
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from sshharness.engine import Engine, Session
from sshharness.logging_utils import get_log_userdata, set_log_userdata
from sshharness.protocol import (
    DEFAULT_RENDEZVOUS_TIMEOUT,
    DEFAULT_TIMEOUT,
    ProtocolError,
    RoleFailure,
    TransportError,
)
from sshharness.rendezvous import RendezvousChannel, receive_result, send_result
from sshharness.roles import (
    ClientConfig,
    RoleFactory,
    ServerConfig,
    Verbosity,
    default_role_factory,
)
from sshharness.waiting import wait_until

logger = logging.getLogger(__name__)


@dataclass
class RoleProcess:
    """A forked role; ``exitcode`` is None until the child has been reaped."""

    tag: str
    pid: int
    exitcode: int | None = None

    def poll(self) -> bool:
        """Reap the child if it has exited. Returns True once it is reaped."""
        if self.exitcode is not None:
            return True
        pid, status = os.waitpid(self.pid, os.WNOHANG)
        if pid == 0:
            return False
        self.exitcode = os.waitstatus_to_exitcode(status)
        return True

    def wait(self) -> int:
        if self.exitcode is None:
            _, status = os.waitpid(self.pid, 0)
            self.exitcode = os.waitstatus_to_exitcode(status)
        return self.exitcode


def _role_main(tag: str, proc: Callable[..., object], *args: Any) -> None:
    """Body of every forked role process."""
    set_log_userdata(f"{get_log_userdata()} ({tag})")
    try:
        proc(*args)
    except Exception:
        logger.exception(f"{tag} role failed")
        raise SystemExit(1) from None


def _flush_output() -> None:
    # os._exit drops whatever is still buffered
    for handler in logging.getLogger().handlers:
        handler.flush()
    for stream in (sys.stdout, sys.stderr):
        if stream is not None and not stream.closed:
            stream.flush()


def _run_child(tag: str, proc: Callable[..., object], *args: Any) -> None:
    """Run a role in the freshly forked child and leave through ``os._exit``."""
    code = 1
    try:
        _role_main(tag, proc, *args)
        code = 0
    except SystemExit as e:
        code = e.code if isinstance(e.code, int) else 1
    finally:
        try:
            _flush_output()
        finally:
            os._exit(code)


class TopologyRunner:
    """Fork roles for test cases and keep track of the children.

    Args:
        roles (RoleFactory | None): Source of role configurations (and of the
            server port counter). A private factory is created when None.
        engine (Engine | None): When set, procedures receive engine servers and
            sessions built from the configurations instead of the raw configs.
        rendezvous_timeout (float): Bound on waiting for a separate client result.
    """

    def __init__(
        self,
        roles: RoleFactory | None = None,
        engine: Engine | None = None,
        rendezvous_timeout: float = DEFAULT_RENDEZVOUS_TIMEOUT,
    ) -> None:
        self.roles = roles if roles is not None else RoleFactory()
        self.engine = engine
        self.rendezvous_timeout = rendezvous_timeout
        self.children: list[RoleProcess] = []

    def _server(self, config: ServerConfig) -> Any:
        return config if self.engine is None else self.engine.make_server(config)

    def _session(self, config: ClientConfig) -> Any:
        return config if self.engine is None else self.engine.make_session(config)

    def _fork_role(self, tag: str, proc: Callable[..., object], *args: Any) -> RoleProcess:
        _flush_output()
        pid = os.fork()
        if pid == 0:
            _run_child(tag, proc, *args)

        child = RoleProcess(tag, pid)
        self.children.append(child)
        logger.debug(f"Forked {tag} role as pid {pid!r}")
        return child

    def run_client_test(
        self,
        server_proc: Callable[[Any], object],
        client_proc: Callable[[], Any],
    ) -> Any:
        """Fork a server role running ``server_proc``; return ``client_proc()``.

        The child lowers its verbosity to ``RARE`` (root logger at ``WARNING``)
        before building the server. Nothing synchronizes the two roles:
        ``client_proc`` has to retry its connection until the server listens
        (see ``connect_with_retry``).
        """
        config = self.roles.make_server_role()

        def serve() -> None:
            lowered = replace(config, verbosity=Verbosity.RARE)
            logging.getLogger().setLevel(lowered.verbosity.to_logging_level())
            server_proc(self._server(lowered))

        self._fork_role("server", serve)
        return client_proc()

    def run_client_test_separate_process(
        self,
        server_proc: Callable[[Any], object],
        client_proc: Callable[[], Any],
        pred: Callable[[Any], object],
    ) -> bool:
        """Run both roles in forked processes and return ``pred(client result)``.

        The client result must be JSON serializable.

        Raises:
            RendezvousTimeout: If the client role never delivers a result
                (for instance because ``client_proc`` raised).
        """

        def observe() -> bool:
            with RendezvousChannel(timeout=self.rendezvous_timeout) as channel:
                channel.listen()
                self._fork_role("client", lambda: send_result(channel, client_proc()))
                result = receive_result(channel)
            logger.debug(f"Client role result: {result!r}")
            return bool(pred(result))

        return self.run_client_test(server_proc, observe)

    def run_server_test(
        self,
        client_proc: Callable[[Any], object],
        server_proc: Callable[[Any], Any],
    ) -> Any:
        """Fork a client role running ``client_proc``; return ``server_proc(server)``."""
        server_config = self.roles.make_server_role()
        client_config = self.roles.make_client_role()

        self._fork_role("client", lambda: client_proc(self._session(client_config)))
        return server_proc(self._server(server_config))

    def reap(self, timeout: float | None = None) -> dict[int, int | None]:
        """Wait for forked roles; return ``{pid: exitcode}``.

        With a ``timeout``, children still running when it expires report
        ``None`` and stay tracked. Exit codes of children killed by a signal are
        negative, as in ``subprocess``.
        """
        codes: dict[int, int | None] = {}
        for child in list(self.children):
            if timeout is None:
                child.wait()
            else:
                try:
                    wait_until(child.poll, timeout, what=f"{child.tag} role {child.pid}")
                except TimeoutError:
                    logger.debug(f"{child.tag} role {child.pid!r} still running")
            codes[child.pid] = child.exitcode
            if child.exitcode is not None:
                self.children.remove(child)
        return codes

    def check_children(self, timeout: float | None = None) -> None:
        """Wait for forked roles and raise ``RoleFailure`` for the first bad one."""
        for pid, exitcode in self.reap(timeout).items():
            if exitcode != 0:
                raise RoleFailure(pid, exitcode)

    def kill_children(self) -> None:
        """Kill and reap every role still tracked."""
        for child in self.children:
            if not child.poll():
                os.kill(child.pid, signal.SIGKILL)
        self.reap()


default_runner = TopologyRunner(roles=default_role_factory)


def run_client_test(
    server_proc: Callable[[Any], object], client_proc: Callable[[], Any]
) -> Any:
    """``TopologyRunner.run_client_test`` on the process-wide runner."""
    return default_runner.run_client_test(server_proc, client_proc)


def run_client_test_separate_process(
    server_proc: Callable[[Any], object],
    client_proc: Callable[[], Any],
    pred: Callable[[Any], object],
) -> bool:
    """``TopologyRunner.run_client_test_separate_process`` on the process-wide runner."""
    return default_runner.run_client_test_separate_process(
        server_proc, client_proc, pred
    )


def run_server_test(
    client_proc: Callable[[Any], object], server_proc: Callable[[Any], Any]
) -> Any:
    """``TopologyRunner.run_server_test`` on the process-wide runner."""
    return default_runner.run_server_test(client_proc, server_proc)


def connect_with_retry(session: Session, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Call ``session.connect()`` until it succeeds or ``timeout`` passes.

    Raises:
        TransportError: If no attempt succeeds in time.
    """

    def attempt() -> bool:
        try:
            session.connect()
        except (ProtocolError, TransportError, OSError) as e:
            logger.debug(f"Connect attempt failed: {e}")
            return False
        return True

    wait_until(attempt, timeout, error=TransportError, what="the server to accept")


def call_with_connected_session(
    proc: Callable[[Session], Any],
    session: Session,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """Connect ``session``, return ``proc(session)``, always disconnect."""
    connect_with_retry(session, timeout)
    try:
        return proc(session)
    finally:
        session.disconnect()
