"""
Retry and timing metrics.

Counts the three retry event classes (operation retried, timeout exceeded,
unhandled error) per named executor and times repository operations.

Usage:
    from mongoguard.common.metrics import get_retry_metrics, get_metrics_snapshot

    metrics = get_retry_metrics("users")
    metrics.record(RetryEventType.OPERATION_RETRIED)

    # Export for a health endpoint
    snapshot = get_metrics_snapshot().to_dict()
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

COUNTER_PREFIX = "mongoguard.retry"


class RetryEventType(str, Enum):
    """Retry event classes counted for observability."""
    OPERATION_RETRIED = "operation_retried"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    ERROR_UNHANDLED = "error_unhandled"


class RetryMetrics:
    """Thread-safe counters for one retry executor."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._counts: Dict[RetryEventType, int] = {event: 0 for event in RetryEventType}
        self._last_event_at: Optional[float] = None

    def record(self, event: RetryEventType) -> None:
        """Increment the counter for an event."""
        with self._lock:
            self._counts[event] += 1
            self._last_event_at = time.time()
        logger.debug(f"{COUNTER_PREFIX}.{event.value} [{self.name}] incremented")

    def count(self, event: RetryEventType) -> int:
        with self._lock:
            return self._counts[event]

    @property
    def retried(self) -> int:
        return self.count(RetryEventType.OPERATION_RETRIED)

    @property
    def timeouts(self) -> int:
        return self.count(RetryEventType.TIMEOUT_EXCEEDED)

    @property
    def unhandled(self) -> int:
        return self.count(RetryEventType.ERROR_UNHANDLED)

    def reset(self) -> None:
        with self._lock:
            for event in RetryEventType:
                self._counts[event] = 0
            self._last_event_at = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        with self._lock:
            return {
                "name": self.name,
                "counters": {
                    f"{COUNTER_PREFIX}.{event.value}": count
                    for event, count in self._counts.items()
                },
                "last_event_at": (
                    datetime.fromtimestamp(self._last_event_at, tz=timezone.utc).isoformat()
                    if self._last_event_at else None
                ),
            }


@dataclass
class MetricsSnapshot:
    """Retry metrics for every executor at a point in time."""
    timestamp: datetime
    by_executor: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    total_retried: int = 0
    total_timeouts: int = 0
    total_unhandled: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "total_retried": self.total_retried,
            "total_timeouts": self.total_timeouts,
            "total_unhandled": self.total_unhandled,
            "by_executor": self.by_executor,
        }


class RetryMetricsRegistry:
    """Registry of RetryMetrics keyed by executor name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, RetryMetrics] = {}

    def get(self, name: str) -> RetryMetrics:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = RetryMetrics(name)
            return self._metrics[name]

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            metrics = list(self._metrics.values())

        snapshot = MetricsSnapshot(timestamp=datetime.now(timezone.utc))
        for m in metrics:
            snapshot.by_executor[m.name] = m.to_dict()
            snapshot.total_retried += m.retried
            snapshot.total_timeouts += m.timeouts
            snapshot.total_unhandled += m.unhandled
        return snapshot

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


_registry: Optional[RetryMetricsRegistry] = None
_registry_lock = threading.Lock()


def get_retry_metrics_registry() -> RetryMetricsRegistry:
    """Get the global retry metrics registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = RetryMetricsRegistry()
        return _registry


def get_retry_metrics(name: str) -> RetryMetrics:
    """Get (or create) the metrics for a named executor."""
    return get_retry_metrics_registry().get(name)


def get_metrics_snapshot() -> MetricsSnapshot:
    """Get a snapshot of every executor's counters."""
    return get_retry_metrics_registry().snapshot()


def reset_retry_metrics() -> None:
    """Reset the global registry (used by tests)."""
    global _registry
    with _registry_lock:
        _registry = None


def timed_operation(source: str, operation: str, func: Callable[[], T]) -> Tuple[T, float]:
    """
    Run func and log how long it took.

    Args:
        source: Component performing the operation (e.g., repository type)
        operation: Operation name (e.g., "find_by_id")
        func: Zero-argument callable to time

    Returns:
        (result, elapsed milliseconds)
    """
    started = time.perf_counter()
    result = func()
    elapsed_ms = (time.perf_counter() - started) * 1000

    logger.debug(
        f"Time={datetime.now(timezone.utc).isoformat()} Source={source} "
        f"Method={operation} TimeElapsed={elapsed_ms / 1000:.3f}"
    )
    return result, elapsed_ms
