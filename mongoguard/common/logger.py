"""
Logging for the resilient MongoDB access layer.

RepositoryLogger tags every message with the collection and, for reads, the
read mode that chose the connection handle, so failover and retry events can
be traced back to the repository call that produced them:

    [repo:orders] [dirty_ok] find took 12ms

setup_logging() configures the root logger for processes that use the
library as their main logging setup; get_resolver() calls it when
MONGOGUARD_LOG_LEVEL is set.
"""

import logging
import os
import sys
from typing import Optional


def is_debug_mode() -> bool:
    """True when MONGOGUARD_DEBUG=true; repository loggers then log at DEBUG."""
    return os.getenv("MONGOGUARD_DEBUG", "false").lower() == "true"


class RepositoryLogger:
    """
    Logger that prefixes messages with the repository and read mode.

    for_read_mode() returns a sibling logger for the same repository, so one
    repository can tag reads made under different read preferences.
    """

    def __init__(
        self,
        name: str,
        repository: Optional[str] = None,
        read_mode: Optional[str] = None,
        debug_mode: Optional[bool] = None
    ):
        """
        Args:
            name: Logger name (usually __name__)
            repository: Collection name
            read_mode: Read mode tag, e.g. "primary" or "dirty_ok"
            debug_mode: Force DEBUG level; None follows MONGOGUARD_DEBUG
        """
        self.logger = logging.getLogger(name)
        self.repository = repository
        self.read_mode = read_mode
        self._debug_mode = debug_mode if debug_mode is not None else is_debug_mode()

        if self._debug_mode:
            self.logger.setLevel(logging.DEBUG)

    def for_read_mode(self, read_mode: Optional[str]) -> "RepositoryLogger":
        if read_mode == self.read_mode:
            return self
        return RepositoryLogger(self.logger.name, self.repository, read_mode, self._debug_mode)

    def _format_message(self, message: str) -> str:
        prefix = []
        if self.repository:
            prefix.append(f"[repo:{self.repository}]")
        if self.read_mode:
            prefix.append(f"[{self.read_mode}]")
        return f"{' '.join(prefix)} {message}" if prefix else message

    def log(self, level: int, message: str, **kwargs):
        self.logger.log(level, self._format_message(message), **kwargs)

    def debug(self, message: str, **kwargs):
        self.log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self.log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self.log(logging.ERROR, message, **kwargs)


def setup_logging(level: str = "INFO", format: str = "simple") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        format: "simple" or "json" (one JSON object per line)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if format == "json":
        formatter = logging.Formatter(
            '{"time": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)
