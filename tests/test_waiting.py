import time

import pytest

from sshharness import waiting
from sshharness.protocol import RendezvousTimeout


class TestWaitUntil:
    def test_returns_once_predicate_holds(self):
        calls = []

        def predicate():
            calls.append(1)
            return len(calls) >= 3

        waiting.wait_until(predicate, timeout=5)

        assert len(calls) == 3

    def test_immediate_success_does_not_sleep(self, monkeypatch):
        def no_sleep(_):
            raise AssertionError("slept")

        monkeypatch.setattr(waiting.time, "sleep", no_sleep)

        waiting.wait_until(lambda: True, timeout=5)

    def test_timeout_raises_requested_error(self):
        start = time.monotonic()

        with pytest.raises(RendezvousTimeout, match=r"waiting for the path"):
            waiting.wait_until(
                lambda: False, 0.05, error=RendezvousTimeout, what="the path"
            )

        assert time.monotonic() - start < 2

    def test_zero_timeout_still_evaluates_predicate(self):
        calls = []

        def predicate():
            calls.append(1)
            return False

        with pytest.raises(TimeoutError):
            waiting.wait_until(predicate, 0)

        assert len(calls) >= 1

    def test_backoff_is_capped(self, monkeypatch):
        delays = []
        monkeypatch.setattr(waiting.time, "sleep", delays.append)
        ticks = iter(range(1000))
        monkeypatch.setattr(waiting.time, "monotonic", lambda: next(ticks) * 0.01)

        with pytest.raises(TimeoutError):
            waiting.wait_until(
                lambda: False, 1.0, initial_delay=0.001, max_delay=0.004
            )

        assert delays[:3] == [0.001, 0.002, 0.004]
        assert max(delays) <= 0.004
