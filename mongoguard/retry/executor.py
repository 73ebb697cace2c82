"""
Retry/backoff executor for repository operations.

Every read and write goes through RetryExecutor.execute(). Transient errors
(see classifier.py) are retried with exponential backoff: 0.5s, 1s, 2s, 4s,
8s, 16s. When the next wait would reach the 32s cap the last error surfaces
as RetryTimeoutExceeded. Everything else is fatal and propagates at once.

Write operations must be idempotent under duplicate-key collapse: if a write
fails, is retried, and the retry reports a duplicate key, the first attempt
is assumed to have landed before the connection dropped and the call
returns the caller's default instead of raising.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, wait_exponential

from ..common.config import Config
from ..common.errors import RetryTimeoutExceeded
from ..common.metrics import RetryEventType, RetryMetrics, get_retry_metrics
from .classifier import classify_transient, is_duplicate_key, unwrap_invocation_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    """Where one logical call is in its retry loop."""
    attempt: int
    backoff: float
    max_backoff: float

    @property
    def exhausted(self) -> bool:
        return self.backoff >= self.max_backoff


class RetryExecutor:
    """
    Runs operations with transient-error retries.

    Retries of one logical call are strictly sequential and sleep on the
    calling thread. Separate calls share nothing but the metrics counters.
    """

    def __init__(
        self,
        initial_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[RetryMetrics] = None,
        name: str = "default",
    ):
        self.initial_backoff = initial_backoff if initial_backoff is not None else Config.RETRY_INITIAL_BACKOFF_SECONDS
        self.max_backoff = max_backoff if max_backoff is not None else Config.RETRY_MAX_BACKOFF_SECONDS
        if self.initial_backoff <= 0:
            raise ValueError("initial_backoff must be positive")

        self.name = name
        self.metrics = metrics or get_retry_metrics(name)
        self._sleep = sleep
        self._wait = wait_exponential(multiplier=self.initial_backoff, exp_base=2, max=self.max_backoff)

    def backoff_for(self, retry_state: RetryCallState) -> RetryAttempt:
        return RetryAttempt(
            attempt=retry_state.attempt_number,
            backoff=self._wait(retry_state),
            max_backoff=self.max_backoff,
        )

    def execute(
        self,
        operation: Callable[[], T],
        is_read_only: bool,
        revalidate: Optional[Callable[[], object]] = None,
        default: Optional[T] = None,
        operation_name: Optional[str] = None,
    ) -> Optional[T]:
        """
        Run operation, retrying transient errors.

        Args:
            operation: Zero-argument callable performing one attempt
            is_read_only: False for writes; enables revalidate and duplicate-key collapse
            revalidate: Called before each write attempt (e.g. re-obtain the collection)
            default: Returned when a retried write reports a duplicate key
            operation_name: Name used in logs and errors

        Returns:
            The operation's result, or default on duplicate-key collapse

        Raises:
            RetryTimeoutExceeded: Transient errors persisted until the backoff cap
            Exception: Any non-transient error, unchanged
        """
        name = operation_name or getattr(operation, "__name__", "operation")

        retrying = Retrying(
            sleep=self._sleep,
            wait=self._wait,
            stop=self._backoff_exhausted,
            retry=retry_if_exception(lambda e: self._should_retry(name, e)),
            before_sleep=lambda rs: self._log_retry(name, rs),
            retry_error_callback=lambda rs: self._raise_timeout(name, rs),
        )

        for attempt in retrying:
            with attempt:
                try:
                    if not is_read_only and revalidate is not None:
                        revalidate()
                    return operation()
                except Exception as e:
                    if (
                        not is_read_only
                        and attempt.retry_state.attempt_number > 1
                        and is_duplicate_key(e)
                    ):
                        logger.info(
                            f"[{self.name}] {name}: duplicate key on retry "
                            f"{attempt.retry_state.attempt_number}, first attempt succeeded"
                        )
                        return default
                    raise

    def _backoff_exhausted(self, retry_state: RetryCallState) -> bool:
        return self.backoff_for(retry_state).exhausted

    def _should_retry(self, name: str, exc: BaseException) -> bool:
        error_class = classify_transient(exc)
        if error_class is not None:
            return True

        self.metrics.record(RetryEventType.ERROR_UNHANDLED)
        cause = unwrap_invocation_error(exc)
        logger.error(f"[{self.name}] {name}: unhandled {type(cause).__name__}: {cause}")
        return False

    def _log_retry(self, name: str, retry_state: RetryCallState) -> None:
        self.metrics.record(RetryEventType.OPERATION_RETRIED)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[{self.name}] {name}: {classify_transient(exc) if exc else 'transient'} error "
            f"on attempt {retry_state.attempt_number}, retrying in "
            f"{retry_state.next_action.sleep if retry_state.next_action else 0:.1f}s: {exc}"
        )

    def _raise_timeout(self, name: str, retry_state: RetryCallState):
        self.metrics.record(RetryEventType.TIMEOUT_EXCEEDED)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        cause = unwrap_invocation_error(exc) if exc is not None else None
        logger.error(
            f"[{self.name}] {name}: giving up after {retry_state.attempt_number} attempts "
            f"(backoff cap {self.max_backoff}s)"
        )
        raise RetryTimeoutExceeded(name, retry_state.attempt_number, cause) from cause
