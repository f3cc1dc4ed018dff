"""Throttled result cache: the call surface the API layer uses.

``ThrottledCacheMiddleware`` composes the sliding window limiter, the TTL
cache and the metrics recorder:

1. Admit the access attempt (rejections never touch the producer or cache).
2. Serve from cache, or produce once per concurrent miss.
3. Record the total wall time under the caller's logical operation name.

Access attempts are limited independently of cache hits, so re-requesting
an already cached key still spends quota. ``exempt_cache_hits=True`` opts into
the alternative policy where fresh hits are served without admission.

Every ``execute`` call yields exactly one of ``Ok``, ``RateLimited`` or
``Failed``; only invalid arguments raise. Anything that goes wrong while
producing, including a blocking producer handed to ``execute_sync`` that
returns an awaitable, comes back as ``Failed`` and is delivered the same way
to every caller waiting on that production.
"""

from __future__ import annotations

import inspect
import logging
import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable, Generic, TypeVar

from throttlecache.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from throttlecache.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from throttlecache.core.clock import Clock, monotonic_clock
from throttlecache.core.config import ThrottleSettings
from throttlecache.core.errors import invalid_argument
from throttlecache.core.logging import hash_key
from throttlecache.core.metrics import MetricsRecorder
from throttlecache.utils.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OPERATION = "throttled_cache.execute"

_MISSING = object()


@dataclass(frozen=True)
class ThrottlePolicy:
    """Per-call limiter and cache policy.

    Attributes:
        capacity: Max access attempts per caller key within the window.
        window_seconds: Sliding window length in seconds.
        ttl_seconds: Seconds to cache the produced value (0 disables caching).
    """

    capacity: int
    window_seconds: int
    ttl_seconds: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity < 1:
            raise invalid_argument("capacity", "capacity must be an integer >= 1", self.capacity)
        if not _is_number(self.window_seconds) or not self.window_seconds > 0:
            raise invalid_argument(
                "window_seconds", "window_seconds must be a finite number > 0", self.window_seconds
            )
        if not _is_number(self.ttl_seconds) or self.ttl_seconds < 0:
            raise invalid_argument(
                "ttl_seconds", "ttl_seconds must be a finite number >= 0", self.ttl_seconds
            )

    @classmethod
    def from_settings(cls, throttle_settings: ThrottleSettings) -> "ThrottlePolicy":
        return cls(
            capacity=throttle_settings.default_capacity,
            window_seconds=throttle_settings.default_window_seconds,
            ttl_seconds=throttle_settings.default_ttl_seconds,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    """The producer's value, fresh or from cache.

    ``quota`` is the admission that let the call through; it is None when a
    fresh cache hit was served without admission (``exempt_cache_hits``).
    """

    value: T
    quota: RateLimitResult | None = field(default=None, compare=False)


@dataclass(frozen=True)
class RateLimited:
    """The caller exceeded its quota; nothing was produced."""

    retry_after_seconds: int
    limit: int
    remaining: int = 0


@dataclass(frozen=True)
class Failed:
    """The producer raised; ``error`` is its exception, unmodified."""

    error: BaseException = field(compare=False)


ExecuteResult = Ok | RateLimited | Failed


class ThrottledCacheMiddleware:
    """Rate limited, single-flight cached execution of expensive operations.

    Construct one per application (see ``build_throttled_cache``) and hand it
    to whatever needs it; ``clear()`` resets all state for test isolation.
    """

    def __init__(
        self,
        limiter: AbstractRateLimiter,
        cache: TTLCache,
        metrics: MetricsRecorder,
        *,
        exempt_cache_hits: bool = False,
    ) -> None:
        self.limiter = limiter
        self.cache = cache
        self.metrics = metrics
        self.exempt_cache_hits = exempt_cache_hits

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"ThrottledCacheMiddleware(limiter={self.limiter!r}, cache={self.cache!r}, "
            f"exempt_cache_hits={self.exempt_cache_hits})"
        )

    async def execute(
        self,
        key: str,
        policy: ThrottlePolicy,
        producer: Callable[[], Any],
        *,
        operation: str = DEFAULT_OPERATION,
    ) -> ExecuteResult:
        """Run ``producer`` for ``key`` behind the rate limit and the cache.

        Args:
            key: Caller/request key, derived by the caller from identity and
                logical operation.
            policy: Capacity, window and TTL for this call.
            producer: Coroutine function or blocking callable computing the value.
            operation: Metric name the total wall time is recorded under.

        Returns:
            ``Ok``, ``RateLimited`` or ``Failed``.

        Raises:
            InvalidArgumentError: If key, policy or producer are invalid.
        """
        end = self._begin(key, policy, producer, operation)
        try:
            admission = self._gate(key, policy)
            if not isinstance(admission, RateLimitResult):
                return admission
            try:
                value = await self.cache.aget_or_set(key, producer, policy.ttl_seconds)
            except Exception as exc:
                return self._failed(key, operation, exc)
            return Ok(value, quota=admission)
        finally:
            end()

    def execute_sync(
        self,
        key: str,
        policy: ThrottlePolicy,
        producer: Callable[[], Any],
        *,
        operation: str = DEFAULT_OPERATION,
    ) -> ExecuteResult:
        """Blocking variant of ``execute`` for threaded callers.

        Coroutine functions are rejected up front. A plain callable that turns
        out to return an awaitable is only detected once it has run, so that
        call yields ``Failed`` wrapping an ``InvalidArgumentError``.
        """
        if inspect.iscoroutinefunction(producer):
            raise invalid_argument("producer", "coroutine producers require execute()")
        end = self._begin(key, policy, producer, operation)
        try:
            admission = self._gate(key, policy)
            if not isinstance(admission, RateLimitResult):
                return admission
            try:
                value = self.cache.get_or_set(key, producer, policy.ttl_seconds)
            except Exception as exc:
                return self._failed(key, operation, exc)
            return Ok(value, quota=admission)
        finally:
            end()

    def get_all_metrics(self) -> dict[str, dict[str, float | int]]:
        """Read-only metrics snapshot for status endpoints."""
        return self.metrics.get_all_metrics()

    def clear(self) -> None:
        """Reset limiter, cache and metrics state."""
        self.limiter.clear()
        self.cache.clear()
        self.metrics.reset()

    def _begin(
        self,
        key: str,
        policy: ThrottlePolicy,
        producer: Callable[[], Any],
        operation: str,
    ) -> Callable[[], float]:
        if not key or not isinstance(key, str):
            raise invalid_argument("key", "key must be a non-empty string", key)
        if not isinstance(policy, ThrottlePolicy):
            raise invalid_argument("policy", "policy must be a ThrottlePolicy")
        if not callable(producer):
            raise invalid_argument("producer", "producer must be callable")
        return self.metrics.start(operation)

    def _gate(self, key: str, policy: ThrottlePolicy) -> ExecuteResult | RateLimitResult:
        """Admit the attempt.

        Returns the admission when production may proceed, otherwise the
        final result (a rejection, or an exempt cache hit).
        """
        if self.exempt_cache_hits:
            # The miss is counted once, by get_or_set.
            hit = self.cache.get(key, _MISSING, count_miss=False)
            if hit is not _MISSING:
                return Ok(hit)

        result = self.limiter.admit(key, policy.capacity, policy.window_seconds)
        if not result.allowed:
            return self._rate_limited(key, result)
        return result

    def _rate_limited(self, key: str, result: RateLimitResult) -> RateLimited:
        retry_after = result.retry_after_seconds or 1
        logger.info(
            "throttle.rate_limited",
            extra={
                "key_hash": hash_key(key),
                "limit": result.limit,
                "retry_after_s": retry_after,
            },
        )
        return RateLimited(retry_after_seconds=retry_after, limit=result.limit, remaining=result.remaining)

    def _failed(self, key: str, operation: str, exc: Exception) -> Failed:
        logger.warning(
            "throttle.producer_failed",
            extra={
                "key_hash": hash_key(key),
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return Failed(exc)


def _is_number(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, Real) and math.isfinite(value)


def build_throttled_cache(
    throttle_settings: ThrottleSettings,
    *,
    clock: Clock = monotonic_clock,
) -> ThrottledCacheMiddleware:
    """Build a fully wired middleware instance from settings.

    Args:
        throttle_settings: Throttle section of the application settings.
        clock: Time source shared by the limiter and the cache.

    Returns:
        A new, independent ``ThrottledCacheMiddleware``.
    """
    metrics = MetricsRecorder()
    return ThrottledCacheMiddleware(
        limiter=InMemorySlidingWindowRateLimiter(clock=clock, metrics=metrics),
        cache=TTLCache(
            clock=clock,
            max_entries=throttle_settings.cache_max_entries,
            metrics=metrics,
        ),
        metrics=metrics,
        exempt_cache_hits=throttle_settings.exempt_cache_hits,
    )
