import logging
import socket
from collections.abc import Callable
from typing import Any

import pytest

from sshharness.logging_utils import set_log_userdata
from sshharness.ports import get_unused_port
from sshharness.roles import RoleFactory
from sshharness.runner import TopologyRunner


@pytest.fixture
def readout(capsys) -> Callable[[], Any]:
    def _():
        return capsys.readouterr().out.replace("\r\n", "\n").rstrip("\n")

    return _


@pytest.fixture
def readerr(capsys) -> Callable[[], Any]:
    def _():
        return capsys.readouterr().err.replace("\r\n", "\n").rstrip("\n")

    return _


@pytest.fixture(autouse=True)
def userdata():
    set_log_userdata("test")
    yield "test"
    set_log_userdata("")


@pytest.fixture(autouse=True)
def restore_root_handlers():
    # CLI entry points configure root logging against pytest's captured
    # stderr; drop those handlers so later tests don't flush closed streams
    root = logging.getLogger()
    saved = list(root.handlers)
    yield
    for h in list(root.handlers):
        if h not in saved:
            root.removeHandler(h)
            h.close()


@pytest.fixture
def roles():
    return RoleFactory(get_unused_port())


@pytest.fixture
def runner(roles):
    r = TopologyRunner(roles=roles, rendezvous_timeout=10.0)
    yield r
    # never leave forked roles behind
    r.reap(10)
    r.kill_children()


@pytest.fixture(scope="function")
def socket_pair():
    s1, s2 = socket.socketpair()
    s1.settimeout(1.0)
    s2.settimeout(1.0)
    try:
        yield s1, s2
    finally:
        s1.close()
        s2.close()
