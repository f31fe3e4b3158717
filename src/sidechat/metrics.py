"""Lightweight in-process metrics for sidechat.

This module provides:
- Timing of Local Store operations
- Counters for transport events (retries, unreachable peers, fallbacks)
- Request timing for the relay service

Exposed by the relay service at /metrics. No external dependencies.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Operations slower than this are logged
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def get_counter(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "operations": {k: v.to_dict() for k, v in self.operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.operations.clear()
            self.request_stats.clear()
            self.counters.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed(operation: str):
    """Context manager to time a block.

    Usage:
        with timed("search.rebuild"):
            index.rebuild(rows)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow operation: {operation} took {duration_ms:.1f}ms")


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator to time a function and record it as an operation.

    Usage:
        @timed_operation("store.save_message")
        def save_message(self, message): ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.record_operation(operation_name, duration_ms)
                if duration_ms > SLOW_OPERATION_MS:
                    logger.warning(f"Slow operation: {operation_name} took {duration_ms:.1f}ms")

        return wrapper  # type: ignore

    return decorator
