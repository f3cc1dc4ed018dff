"""Time sources used by the limiter, cache and metrics recorder.

A clock is any zero-argument callable returning seconds as a float. Expiry
and window logic compare against the injected clock only, so tests can drive
time explicitly instead of sleeping.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

Clock = Callable[[], float]

monotonic_clock: Clock = time.monotonic


class ManualClock:
    """Deterministic clock advanced by hand.

    Example:
        >>> clock = ManualClock(start=100.0)
        >>> clock()
        100.0
        >>> clock.advance(5)
        >>> clock()
        105.0
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"ManualClock(now={self._now})"

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        with self._lock:
            self._now += seconds

    def set(self, value: float) -> None:
        with self._lock:
            self._now = float(value)
