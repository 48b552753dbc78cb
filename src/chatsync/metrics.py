"""Simple metrics for chatsync.

This module provides:
- Remote operation timing (execute by statement kind, attachment uploads)
- Counters for sync activity (observer firings, merges, rollbacks, ...)

Metrics are in-process only. Each ChatContext owns one collector, exported
with ``Chat.metrics()``.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float, failed: bool = False) -> None:
        self.count += 1
        if failed:
            self.errors += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "errors": self.errors,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Per-context metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_operation(self, operation: str, duration_ms: float, failed: bool = False) -> None:
        with self._lock:
            self.operations[operation].record(duration_ms, failed)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def count(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    @asynccontextmanager
    async def timed(self, operation: str):
        """Time an awaited remote operation.

        Usage:
            async with metrics.timed("execute:select"):
                result = await store.execute(stmt)
        """
        start = time.perf_counter()
        failed = False
        try:
            yield
        except BaseException:
            failed = True
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record_operation(operation, duration_ms, failed)
            if duration_ms > SLOW_OPERATION_MS:
                logger.warning(f"Slow remote operation: {operation} took {duration_ms:.1f}ms")

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "operations": {k: v.to_dict() for k, v in self.operations.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.operations.clear()
            self.counters.clear()
            self._start_time = time.time()
