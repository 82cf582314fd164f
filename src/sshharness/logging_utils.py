"""Logging helpers shared by every harness process.

This module configures the **root** logger so harness code (and the session
engine under test) can simply call ``logging.getLogger(__name__)`` and emit
messages.

Every line carries a *userdata tag*: an identity string such as
``"dispatch"`` or ``"dispatch (server)"``. Forked roles inherit the tag of
their parent and extend it, so lines from concurrently running roles stay
attributable after they interleave in one file.

Line format::

    [2024-01-01T12:00:00+0100, "dispatch (server)", INFO]: message

Behavior of ``setup_test_suite_logging``:
- ``<name>-libssh.log`` receives every record at the requested level.
- ``<name>-errors.log`` receives ``WARNING`` and above, and ``sys.stderr`` is
  redirected to it until ``TestSuiteLogging.close`` is called.
- Python warnings are routed through logging (via ``logging.captureWarnings``).
"""

import logging
import pathlib
import sys
from dataclasses import dataclass
from typing import TextIO

LOG_FORMAT = '[{asctime}, "{userdata}", {levelname}]: {message}'
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

_log_userdata = ""
_active_suite: "TestSuiteLogging | None" = None


def set_log_userdata(tag: str) -> None:
    """Set the identity tag stamped on every following log line of this process."""
    global _log_userdata
    _log_userdata = tag


def get_log_userdata() -> str:
    return _log_userdata


class UserdataFilter(logging.Filter):
    """Stamp each record with the current userdata tag."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.userdata = _log_userdata
        return True


@dataclass
class TestSuiteLogging:
    """Handles returned by ``setup_test_suite_logging``."""

    __test__ = False

    log_file: pathlib.Path
    errors_file: pathlib.Path
    errors_stream: TextIO
    saved_stderr: TextIO

    def close(self) -> None:
        """Remove the suite handlers and put ``sys.stderr`` back.

        A suite already replaced by a later ``setup_test_suite_logging`` call
        leaves the handlers and ``sys.stderr`` of its successor alone.
        """
        global _active_suite
        if _active_suite is self:
            _reset_root_handlers()
            sys.stderr = self.saved_stderr
            _active_suite = None
        if not self.errors_stream.closed:
            self.errors_stream.close()


def _set_formatter(handler: logging.Handler) -> None:
    handler.setFormatter(
        logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT, style="{")
    )
    handler.addFilter(UserdataFilter())


def _normalize_level(level: str) -> int:
    level_upper = level.upper()
    numeric_level = getattr(logging, level_upper, None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")
    return numeric_level


def _reset_root_handlers() -> None:
    # avoid duplicated logs if logging is configured more than once
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()


def _capture_warnings() -> None:
    logging.captureWarnings(True)
    warn_logger = logging.getLogger("py.warnings")
    warn_logger.handlers.clear()
    warn_logger.propagate = True


def configure_logging(*, level: str = "INFO") -> None:
    """Configure root logging for a CLI run: one tagged handler on stderr.

    Args:
        level (str): Logging level name (e.g., ``"DEBUG"``, ``"INFO"``).

    Raises:
        ValueError: If ``level`` is not a valid logging level name.
    """
    numeric_level = _normalize_level(level)
    _capture_warnings()

    root = logging.getLogger()
    root.setLevel(numeric_level)
    _reset_root_handlers()

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(numeric_level)
    _set_formatter(handler)
    root.addHandler(handler)


def setup_test_suite_logging(
    name: str, directory: str | pathlib.Path = ".", level: str = "DEBUG"
) -> TestSuiteLogging:
    """Send the logs of test suite ``name`` to its two log files.

    This attaches two handlers to the **root** logger:

    1) A file handler at ``level`` writing to ``<directory>/<name>-libssh.log``.
    2) A file handler at ``WARNING`` and above writing to
       ``<directory>/<name>-errors.log``, which also replaces ``sys.stderr``.

    The userdata tag is reset to ``name``. Calling this function again replaces
    the handlers of the previous call.

    Args:
        name (str): Test suite name, used for the file names and the initial tag.
        directory (str | pathlib.Path): Where to create the files.
        level (str): Logging level name for the protocol log file.

    Returns:
        (TestSuiteLogging): Paths and streams; call ``close()`` when the suite ends.

    Raises:
        ValueError: If ``level`` is not a valid logging level name.

    Examples:
        >>> import logging, tempfile
        >>> from sshharness.logging_utils import setup_test_suite_logging
        >>> suite = setup_test_suite_logging("demo", tempfile.mkdtemp())
        >>> logging.getLogger("demo").info("hello")
        >>> suite.close()
    """
    numeric_level = _normalize_level(level)
    _capture_warnings()

    directory = pathlib.Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"{name}-libssh.log"
    errors_file = directory / f"{name}-errors.log"

    global _active_suite
    saved_stderr = sys.stderr
    if _active_suite is not None:
        # keep the stderr from before the first suite
        saved_stderr = _active_suite.saved_stderr
        _active_suite.errors_stream.close()

    root = logging.getLogger()
    root.setLevel(numeric_level)
    _reset_root_handlers()

    set_log_userdata(name)

    handler: logging.Handler = logging.FileHandler(filename=log_file, mode="w")
    handler.setLevel(numeric_level)
    _set_formatter(handler)
    root.addHandler(handler)

    # line buffered so forked roles that exit with os._exit lose nothing
    errors_stream = open(errors_file, "w", buffering=1)  # noqa: SIM115
    err_handler = logging.StreamHandler(stream=errors_stream)
    err_handler.setLevel("WARNING")
    _set_formatter(err_handler)
    root.addHandler(err_handler)

    sys.stderr = errors_stream

    _active_suite = TestSuiteLogging(
        log_file=log_file,
        errors_file=errors_file,
        errors_stream=errors_stream,
        saved_stderr=saved_stderr,
    )
    return _active_suite
