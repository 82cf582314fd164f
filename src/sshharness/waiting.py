"""Bounded polling with exponential backoff.

Used wherever one harness process has to wait for something another process
does (a socket path appearing, a channel becoming ready).
"""

import logging
import time
from collections.abc import Callable

DEFAULT_INITIAL_DELAY = 0.001
DEFAULT_MAX_DELAY = 0.1

logger = logging.getLogger(__name__)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    error: Callable[[str], Exception] = TimeoutError,
    what: str = "condition",
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> None:
    """Poll ``predicate`` until it returns True or ``timeout`` seconds pass.

    The delay between polls starts at ``initial_delay`` and doubles up to
    ``max_delay``. The predicate is always evaluated at least once, and once more
    right at the deadline.

    Args:
        predicate (Callable[[], bool]): Condition to wait for.
        timeout (float): Maximum number of seconds to wait.
        error (Callable[[str], Exception]): Exception type raised on timeout.
        what (str): Human readable name of the condition, used in the message.
        initial_delay (float): First sleep between polls, in seconds.
        max_delay (float): Upper bound of the sleep between polls, in seconds.

    Raises:
        Exception: An instance of ``error`` if the deadline passes.

    Examples:
        >>> wait_until(lambda: True, timeout=0.1)
        >>> wait_until(lambda: False, timeout=0.01, what="never")
        Traceback (most recent call last):
        ...
        TimeoutError: Timed out after 0.01s waiting for never
    """
    deadline = time.monotonic() + timeout
    delay = initial_delay
    while not predicate():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            # last chance, the condition may have flipped while we slept
            if predicate():
                return
            logger.debug(f"Gave up waiting for {what} after {timeout}s")
            raise error(f"Timed out after {timeout}s waiting for {what}")
        time.sleep(min(delay, remaining))
        delay = min(delay * 2, max_delay)
