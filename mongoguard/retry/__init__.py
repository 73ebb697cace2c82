"""Retry/backoff engine and transient error classification."""

from .classifier import (
    classify_transient,
    is_duplicate_key,
    is_transient,
    unwrap_invocation_error,
)
from .executor import RetryAttempt, RetryExecutor

__all__ = [
    "RetryAttempt",
    "RetryExecutor",
    "classify_transient",
    "is_duplicate_key",
    "is_transient",
    "unwrap_invocation_error",
]
