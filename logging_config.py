"""
logging setup for the ledger service.

INFO / WARNING go to stdout, ERROR and above go to stderr, so container
platforms classify severity correctly.
"""

import logging
import sys
from typing import List


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# handlers installed by setup_logging, so a second call replaces them
_installed: List[logging.Handler] = []


class MaxLevelFilter(logging.Filter):
    """only lets records up to max_level (inclusive) through."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def setup_logging(level: str = "INFO") -> None:
    """
    configure the root logger. safe to call more than once: our own
    handlers are replaced, handlers added by others are left alone.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in _installed:
        root_logger.removeHandler(handler)
    _installed.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    for handler in (stdout_handler, stderr_handler):
        root_logger.addHandler(handler)
        _installed.append(handler)

    # psycopg is chatty at DEBUG
    logging.getLogger("psycopg").setLevel(logging.WARNING)
