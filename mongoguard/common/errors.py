"""
Error taxonomy for the resilient MongoDB access layer.

Transient errors are retried locally by the retry executor and only surface
once the backoff cap is exceeded (RetryTimeoutExceeded). Fatal connection,
fatal query and contract violations always reach the caller, chained to the
underlying driver error.
"""

from typing import Optional

from .error_handling import ErrorContext


class MongoGuardError(Exception):
    """Base class for all errors raised by mongoguard."""


class ConfigurationError(MongoGuardError, ValueError):
    """Raised when a connection string or setting cannot be resolved."""


class TransientTopologyError(MongoGuardError):
    """
    A temporary topology condition (election, no primary, stale secondary,
    pool reset, stream reset) that is safe to retry.
    """


class RetryTimeoutExceeded(MongoGuardError):
    """Raised when retries of a transient error reach the backoff cap."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation '{operation}' still failing after {attempts} attempts: "
            f"{type(last_error).__name__ if last_error else 'unknown'}: {last_error}"
        )


class FatalConnectionError(MongoGuardError):
    """
    Raised when every failover branch (with credentials, without credentials,
    re-resolved credentials) has been tried and the server is still unreachable.
    """

    def __init__(self, context: ErrorContext):
        self.context = context
        super().__init__(
            f"Unable to connect to mongo server(s): {','.join(context.servers)} "
            f"database:{context.database} user:{context.user or '(null)'} "
            f"durability:{context.durability}"
        )


class FatalQueryError(MongoGuardError, ValueError):
    """Raised when an operation is malformed and can never succeed."""


class ContractViolation(MongoGuardError):
    """Raised when code uses the change tracker outside its contract."""


class UnmappedMemberError(ContractViolation, AttributeError):
    """Raised when a tracked entity receives a set for a member with no mapping."""

    def __init__(self, type_name: str, member: str):
        self.type_name = type_name
        self.member = member
        super().__init__(f"Unable to find member map for type {type_name} field {member}")
