"""In-memory sliding window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: a registry lock guards the key map and every key owns its own
  lock, so admissions for different keys do not contend.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from numbers import Real

from throttlecache.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from throttlecache.core.clock import Clock, monotonic_clock
from throttlecache.core.errors import invalid_argument
from throttlecache.core.logging import hash_key
from throttlecache.core.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass
class _RateRecord:
    timestamps: deque[float] = field(default_factory=deque)
    window_seconds: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Set once the record is dropped from the registry; holders must re-fetch.
    removed: bool = False


class InMemorySlidingWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter counting admissions in the trailing window per key.

    Unlike a fixed window, no more than ``capacity`` requests are ever
    admitted within any ``window_seconds`` interval, including across what
    would be a bucket boundary.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        clock: Clock = monotonic_clock,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            clock: Time source returning seconds (monotonic by default).
            metrics: Optional recorder timing each admission check.
        """
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._records: dict[str, _RateRecord] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemorySlidingWindowRateLimiter(keys={len(self._records)})"

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _get_record(self, key: str) -> _RateRecord:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = self._records[key] = _RateRecord()
            return record

    @staticmethod
    def _prune_locked(record: _RateRecord, now: float, window_seconds: float) -> None:
        """Drop timestamps that have spent a full window being counted."""
        timestamps = record.timestamps
        while timestamps and now - timestamps[0] >= window_seconds:
            timestamps.popleft()

    @staticmethod
    def _seconds_until_slot(record: _RateRecord, now: float, window_seconds: float) -> int:
        if not record.timestamps:
            return 0
        return max(1, math.ceil(window_seconds - (now - record.timestamps[0])))

    def admit(self, key: str, capacity: int, window_seconds: float) -> RateLimitResult:
        """Admit or reject one request for the provided key.

        This method both checks the trailing window and records the request
        if it is allowed; the prune/check/append sequence is atomic per key.

        Args:
            key: Unique identifier for rate limiting (e.g., API key).
            capacity: Max admissions within any trailing window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            InvalidArgumentError: If key is empty or capacity/window are invalid.
        """
        _validate(key, capacity, window_seconds)

        end = self._metrics.start("rate_limit.admit") if self._metrics else None
        try:
            result = self._admit(key, capacity, window_seconds)
        finally:
            if end is not None:
                end()

        if not result.allowed:
            if self._metrics is not None:
                self._metrics.record("rate_limit.rejected", 1)
            logger.debug(
                "rate_limit.rejected",
                extra={
                    "key_hash": hash_key(key),
                    "limit": capacity,
                    "window_s": window_seconds,
                    "retry_after_s": result.retry_after_seconds,
                },
            )
        return result

    def _admit(self, key: str, capacity: int, window_seconds: float) -> RateLimitResult:
        while True:
            record = self._get_record(key)
            with record.lock:
                if record.removed:
                    continue

                now = self._clock()
                self._prune_locked(record, now, window_seconds)
                record.window_seconds = window_seconds

                if len(record.timestamps) < capacity:
                    record.timestamps.append(now)
                    return RateLimitResult(
                        allowed=True,
                        limit=capacity,
                        remaining=capacity - len(record.timestamps),
                        retry_after_seconds=None,
                        reset_after_seconds=self._seconds_until_slot(record, now, window_seconds),
                    )

                retry_after = self._seconds_until_slot(record, now, window_seconds)
                return RateLimitResult(
                    allowed=False,
                    limit=capacity,
                    remaining=0,
                    retry_after_seconds=retry_after,
                    reset_after_seconds=retry_after,
                )

    def reset(self, key: str) -> None:
        """Clear the record for ``key`` so its next request sees full capacity."""
        with self._lock:
            record = self._records.pop(key, None)
            if record is not None:
                with record.lock:
                    record.removed = True

    def clear(self) -> None:
        with self._lock:
            for record in self._records.values():
                with record.lock:
                    record.removed = True
            self._records.clear()

    def purge_idle(self) -> int:
        """Remove every key whose window holds no admissions.

        Records busy with an admission are skipped and picked up next sweep.

        Returns:
            Number of keys cleaned up.
        """
        now = self._clock()
        cleaned = 0

        with self._lock:
            for key, record in list(self._records.items()):
                if not record.lock.acquire(blocking=False):
                    continue
                try:
                    self._prune_locked(record, now, record.window_seconds)
                    if not record.timestamps:
                        record.removed = True
                        del self._records[key]
                        cleaned += 1
                finally:
                    record.lock.release()

        if cleaned:
            logger.debug("rate_limit.purged", extra={"keys_removed": cleaned})
        return cleaned


def _validate(key: str, capacity: int, window_seconds: float) -> None:
    if not key or not isinstance(key, str):
        raise invalid_argument("key", "key must be a non-empty string", key)
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise invalid_argument("capacity", "capacity must be an integer >= 1", capacity)
    if (
        isinstance(window_seconds, bool)
        or not isinstance(window_seconds, Real)
        or not window_seconds > 0
        or math.isinf(window_seconds)
    ):
        raise invalid_argument("window_seconds", "window_seconds must be > 0", window_seconds)
