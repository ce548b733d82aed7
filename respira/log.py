"""Logging setup shared by every respira module.

Lines look like:
    [I 14:23:45.123 audio    ] Fallback tone ready (220Hz)

Level precedence: explicit argument, then RESPIRA_LOG_LEVEL, then INFO.
"""
import logging
import os
import sys
import threading
from typing import Optional

LEVEL_ENV_VAR = "RESPIRA_LOG_LEVEL"
DEFAULT_LEVEL = "INFO"

_setup_lock = threading.Lock()
_configured = set()


class RespiraFormatter(logging.Formatter):
    """One-letter level, wall-clock time with milliseconds, short module column."""

    MODULE_WIDTH = 9

    def format(self, record):
        module = record.name.rsplit('.', 1)[-1][:self.MODULE_WIDTH]
        clock = f"{self.formatTime(record, '%H:%M:%S')}.{int(record.msecs):03d}"
        line = f"[{record.levelname[0]} {clock} {module:<{self.MODULE_WIDTH}}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv(LEVEL_ENV_VAR) or DEFAULT_LEVEL).upper()
    return getattr(logging, name, logging.INFO)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Logger for a respira component, writing to stdout.

    Args:
        name: Usually __name__
        level: DEBUG/INFO/WARNING/ERROR; see module docstring for fallbacks

    Each logger owns exactly one handler and doesn't propagate, so a message
    is printed once even when a parent logger is configured too.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    with _setup_lock:
        if name not in _configured:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(RespiraFormatter())
            logger.addHandler(handler)
            logger.propagate = False
            _configured.add(name)

    return logger


def set_level(level: str) -> None:
    """Apply one level to every logger created through get_logger()."""
    with _setup_lock:
        names = list(_configured)
    for name in names:
        logging.getLogger(name).setLevel(_resolve_level(level))
