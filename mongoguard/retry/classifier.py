"""
Classification of storage-layer errors.

Transient errors come from temporary replica-set conditions (an election in
progress, a recycled connection pool, a stale secondary) and are safe to
retry. Anything not recognized here is treated as fatal by the executor.
"""

import socket
from typing import Callable, List, Optional, Tuple

from pymongo.errors import (
    BulkWriteError,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    NotPrimaryError,
    OperationFailure,
    PyMongoError,
    WriteError,
)
from tenacity import RetryError

from ..common.errors import TransientTopologyError
from ..connection.driver import is_end_of_stream

DUPLICATE_KEY_CODE = 11000
INTERRUPTED_AT_SHUTDOWN_CODE = 11600
# "not master and slaveOk=false" and its older variants
STALE_SECONDARY_CODES = frozenset({10009, 13435, 15988})


def unwrap_invocation_error(exc: BaseException) -> BaseException:
    """
    Return the real cause of exc.

    A RetryError raised by a nested tenacity loop only carries the last
    attempt; the exception of that attempt is what needs classifying.
    """
    seen = 0
    while isinstance(exc, RetryError) and seen < 10:
        inner = exc.last_attempt.exception() if exc.last_attempt is not None else None
        if inner is None:
            break
        exc = inner
        seen += 1
    return exc


def _caused_by(exc: BaseException, error_type: type) -> bool:
    cause = exc.__cause__ or exc.__context__
    return isinstance(cause, error_type)


def _code(exc: BaseException) -> Optional[int]:
    return getattr(exc, "code", None)


def is_election_pool_recycling(exc: BaseException) -> bool:
    """Connection reset by the server while the pool is recycled after a step-down."""
    if isinstance(exc, ConnectionResetError):
        return True
    return isinstance(exc, ConnectionFailure) and _caused_by(exc, ConnectionResetError)


def is_no_primary(exc: BaseException) -> bool:
    """No primary available: an election must be happening."""
    if isinstance(exc, NotPrimaryError):
        return True
    return isinstance(exc, ConnectionFailure) and "primary" in str(exc).lower()


def is_query_interrupted(exc: BaseException) -> bool:
    return isinstance(exc, OperationFailure) and _code(exc) == INTERRUPTED_AT_SHUTDOWN_CODE


def is_server_not_connected(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and "is no longer connected" in str(exc)


def is_network_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkTimeout, socket.timeout))


def is_topology_connection(exc: BaseException) -> bool:
    return isinstance(exc, (ConnectionFailure, TransientTopologyError))


def is_stale_secondary(exc: BaseException) -> bool:
    return isinstance(exc, OperationFailure) and _code(exc) in STALE_SECONDARY_CODES


# Checked in order; the first match names the error class
TRANSIENT_CONDITIONS: List[Tuple[str, Callable[[BaseException], bool]]] = [
    ("election_pool_recycling", is_election_pool_recycling),
    ("no_primary", is_no_primary),
    ("query_interrupted", is_query_interrupted),
    ("server_not_connected", is_server_not_connected),
    ("end_of_stream", is_end_of_stream),
    ("network_timeout", is_network_timeout),
    ("topology_connection", is_topology_connection),
    ("stale_secondary", is_stale_secondary),
]


def classify_transient(exc: BaseException) -> Optional[str]:
    """
    Name the transient error class of exc, or None if it is not transient.

    Wrapper errors are unwrapped first.
    """
    exc = unwrap_invocation_error(exc)
    for name, condition in TRANSIENT_CONDITIONS:
        if condition(exc):
            return name
    return None


def is_transient(exc: BaseException) -> bool:
    return classify_transient(exc) is not None


def is_duplicate_key(exc: BaseException) -> bool:
    """True if exc is a duplicate key violation (E11000)."""
    exc = unwrap_invocation_error(exc)
    if isinstance(exc, DuplicateKeyError):
        return True
    if isinstance(exc, BulkWriteError):
        write_errors = (exc.details or {}).get("writeErrors", [])
        return bool(write_errors) and all(e.get("code") == DUPLICATE_KEY_CODE for e in write_errors)
    return isinstance(exc, (WriteError, OperationFailure)) and _code(exc) == DUPLICATE_KEY_CODE
