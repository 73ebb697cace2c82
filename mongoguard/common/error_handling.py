"""
Centralized error handling helpers.

Provides the diagnostic context attached to fatal connection errors and a
context manager for logging exceptions on their way to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


@dataclass
class ErrorContext:
    """
    Diagnostic information for a failed connection.

    Carried by FatalConnectionError so callers can tell which cluster,
    database and user the failover state machine gave up on.
    """

    servers: List[str]
    database: Optional[str]
    user: Optional[str]
    durability: str
    connection_string: Optional[str] = None
    state: Optional[str] = None  # failover state when giving up
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "servers": list(self.servers),
            "database": self.database,
            "user": self.user,
            "durability": self.durability,
            "connection_string": self.connection_string,
            "state": self.state,
            "timestamp": self.timestamp,
        }


def log_on_exception(
    logger: logging.Logger,
    operation: str,
    level: int = logging.WARNING,
    include_traceback: bool = False,
):
    """
    Context manager for logging exceptions without swallowing them silently.

    Usage:
        with log_on_exception(logger, "mongo connect", level=logging.ERROR, include_traceback=True):
            driver.connect(url)

    Args:
        logger: Logger instance to use
        operation: Operation description for the log message
        level: Log level (default: WARNING)
        include_traceback: Whether to include stack trace in log
    """

    class ExceptionLogger:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            if exc_val is not None:
                if include_traceback:
                    logger.log(level, f"[{operation}] Failed: {exc_val}", exc_info=True)
                else:
                    logger.log(level, f"[{operation}] Failed: {exc_val}")
            # Return False to not suppress the exception
            return False

    return ExceptionLogger()
