"""
Logging setup for the CLI and the web server.

``main.cli`` calls :func:`setup_from_env` once; modules only ever do
``logger = logging.getLogger(__name__)``.

Console level: ``--debug``/``--verbose``/``--quiet`` flag, else
``NODESTACK_LOG_LEVEL``, else WARNING. ``NODESTACK_LOG_FILE`` adds a
file handler at ``NODESTACK_LOG_FILE_LEVEL`` (default: console level).
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LEVEL = "NODESTACK_LOG_LEVEL"
ENV_FILE = "NODESTACK_LOG_FILE"
ENV_FILE_LEVEL = "NODESTACK_LOG_FILE_LEVEL"

# Console format by threshold: the chattier the level, the more context
_CONSOLE_FORMATS: list[tuple[int, str, str | None]] = [
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d | %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
]
_FILE_FORMAT = ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d | %(message)s", "%Y-%m-%d %H:%M:%S")

# werkzeug logs every SSE request at INFO
_CHATTY_LIBRARIES = ("werkzeug", "urllib3")


def _level_number(name: str | None) -> int:
    value = logging.getLevelName(name.upper()) if name else None
    return value if isinstance(value, int) else logging.WARNING


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = next((f, d) for limit, f, d in _CONSOLE_FORMATS if level <= limit)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(*_FILE_FORMAT))
    return handler


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root handlers with a console handler and an optional file.

    Unknown level names fall back to WARNING. The root logger is set to
    the lower of the console and file levels so neither is starved.
    """
    console_level = _level_number(level)
    handlers = [_console_handler(console_level)]
    if log_file:
        file_level = _level_number(log_file_level) if log_file_level else console_level
        handlers.append(_file_handler(log_file, file_level))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _CHATTY_LIBRARIES:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def resolve_level(flag_level: str | None) -> str:
    """CLI flag wins, then the environment, then WARNING."""
    return flag_level or os.environ.get(ENV_LEVEL, "").strip() or "WARNING"


def setup_from_env(flag_level: str | None = None) -> str:
    """Configure logging from a CLI flag plus the NODESTACK_LOG_* variables.

    Returns the console level name used.
    """
    level = resolve_level(flag_level)
    setup_logging(
        level=level,
        log_file=os.environ.get(ENV_FILE) or None,
        log_file_level=os.environ.get(ENV_FILE_LEVEL) or None,
    )
    return level
