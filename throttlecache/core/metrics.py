"""In-process operation metrics.

``MetricsRecorder`` aggregates named numeric samples (usually durations in
milliseconds) without keeping any sample history: each name holds only
count, total, min, max and the running average. It observes the limiter,
the cache and the HTTP middleware without gating any of them.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import asdict, dataclass
from numbers import Real
from typing import Callable

from throttlecache.core.clock import Clock
from throttlecache.core.errors import invalid_argument


@dataclass
class MetricSample:
    """Aggregated statistics for one metric name."""

    count: int = 0
    total: float = 0.0
    min: float = math.inf
    max: float = -math.inf
    average: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.average = self.total / self.count

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


class MetricsRecorder:
    """Thread-safe aggregator of named metrics.

    Attributes:
        clock: Time source in seconds used by ``start``; durations are
            reported in milliseconds.
    """

    def __init__(self, clock: Clock = time.perf_counter) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: dict[str, MetricSample] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"MetricsRecorder(names={len(self._metrics)})"

    def start(self, name: str) -> Callable[[], float]:
        """Start timing an operation.

        Args:
            name: Metric name the elapsed time is recorded under.

        Returns:
            A function that records the elapsed milliseconds when called and
            returns them.
        """
        _check_name(name)
        started = self._clock()

        def end() -> float:
            duration_ms = (self._clock() - started) * 1000
            self.record(name, duration_ms)
            return duration_ms

        return end

    def record(self, name: str, value: float) -> None:
        """Record a numeric sample under ``name``.

        Raises:
            InvalidArgumentError: If name is empty or value is not a real number.
        """
        _check_name(name)
        if isinstance(value, bool) or not isinstance(value, Real) or math.isnan(value):
            raise invalid_argument("value", "metric value must be a number", value)

        with self._lock:
            sample = self._metrics.get(name)
            if sample is None:
                sample = self._metrics[name] = MetricSample()
            sample.add(float(value))

    def get_metrics(self, name: str) -> MetricSample | None:
        """Return a copy of the aggregated stats for ``name``, if any."""
        with self._lock:
            sample = self._metrics.get(name)
            return MetricSample(**asdict(sample)) if sample is not None else None

    def get_all_metrics(self) -> dict[str, dict[str, float | int]]:
        """Return a snapshot of every metric keyed by name."""
        with self._lock:
            return {name: sample.to_dict() for name, sample in self._metrics.items()}

    def reset(self) -> None:
        """Drop all recorded metrics."""
        with self._lock:
            self._metrics.clear()


def _check_name(name: str) -> None:
    if not name or not isinstance(name, str):
        raise invalid_argument("name", "metric name must be a non-empty string", name)
