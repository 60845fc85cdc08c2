"""
In-process operation metrics.

Counts calls, failures and durations per storage operation. Only used when
``UploadConfig.enable_metrics`` is set; nothing is exported anywhere.
"""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class OperationStats:
    count: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    @property
    def success_rate(self) -> float:
        return (self.count - self.failures) / self.count if self.count else 1.0


class MetricsCollector:
    """Aggregates timing and outcome of named operations."""

    def __init__(self):
        self._stats: dict[str, OperationStats] = {}

    def record(self, operation: str, duration_ms: float, success: bool) -> None:
        stats = self._stats.setdefault(operation, OperationStats())
        stats.count += 1
        stats.total_duration_ms += duration_ms
        stats.max_duration_ms = max(stats.max_duration_ms, duration_ms)
        if not success:
            stats.failures += 1

    @contextmanager
    def track(self, operation: str) -> Iterator[None]:
        """Time the enclosed block; an exception counts as a failure."""
        started = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            self.record(operation, duration_ms, success)
            logger.debug("Operation finished", operation=operation, duration_ms=round(duration_ms, 2), success=success)

    def get(self, operation: str) -> OperationStats:
        return self._stats.get(operation, OperationStats())

    def snapshot(self) -> dict[str, Any]:
        return {
            name: {
                "count": stats.count,
                "failures": stats.failures,
                "average_duration_ms": round(stats.average_duration_ms, 2),
                "max_duration_ms": round(stats.max_duration_ms, 2),
                "success_rate": round(stats.success_rate, 4),
            }
            for name, stats in self._stats.items()
        }

    def reset(self) -> None:
        self._stats.clear()
