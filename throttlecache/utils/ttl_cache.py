"""In-memory TTL cache with single-flight production.

Used to avoid redundant concurrent recomputation of expensive upstream calls
(RPC lookups, aggregate queries). Thread-safe, with an asyncio entry point
that shares the same in-flight bookkeeping, and easy to swap for Redis while
keeping the same interface and behaviors.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import math
import threading
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from numbers import Real
from typing import Any, Callable, Literal

from throttlecache.core.clock import Clock, monotonic_clock
from throttlecache.core.errors import invalid_argument
from throttlecache.core.logging import hash_key
from throttlecache.core.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

ClaimState = Literal["hit", "wait", "lead"]


@dataclass
class CacheEntry:
    """Container for a cached value or a value still being produced.

    ``inflight`` is set only between a miss and its producer finishing;
    while it is set, ``value`` and ``expires_at`` are meaningless.
    """

    value: Any = None
    expires_at: float = 0.0
    inflight: Future | None = None


class TTLCache:
    """Thread-safe, in-memory TTL cache with request collapsing.

    Concurrent misses on the same key share a single producer call: the first
    caller produces, the others wait on its outcome.

    Attributes:
        max_entries: Maximum number of cached items (None for unlimited).
    """

    def __init__(
        self,
        *,
        clock: Clock = monotonic_clock,
        max_entries: int | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if max_entries is not None and max_entries < 1:
            raise invalid_argument("max_entries", "max_entries must be >= 1 or None", max_entries)

        self._clock = clock
        self._max_entries = max_entries
        self._metrics = metrics
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._tasks: set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"TTLCache(max_entries={self._max_entries}, size={len(self._store)}, "
            f"hits={self._hits}, misses={self._misses}, evictions={self._evictions})"
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def get(self, key: str, default: Any = None, *, count_miss: bool = True) -> Any:
        """Retrieve a cached value if it exists and is not expired.

        Args:
            key: Cache key.
            default: Returned when the key is absent, expired or still being
                produced.
            count_miss: Pass False when a miss is followed by ``get_or_set``
                on the same key, which counts that miss itself.

        Returns:
            Cached value or ``default``.
        """
        _check_key(key)

        with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.inflight is not None:
                if count_miss:
                    self._count_miss(key, "not_found" if entry is None else "pending")
                return default

            if self._is_expired(entry):
                self._evict_single(key)
                if count_miss:
                    self._count_miss(key, "expired")
                return default

            self._count_hit(key)
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store a value with TTL, evicting as needed.

        A non-positive ``ttl_seconds`` means "do not cache": nothing is stored and
        any previous value for ``key`` is dropped, so it is never served again.

        Args:
            key: Cache key.
            value: Value to store.
            ttl_seconds: Seconds until the value expires.
        """
        _check_key(key)
        _check_ttl(ttl_seconds)

        with self._lock:
            if ttl_seconds <= 0:
                self._store.pop(key, None)
                return
            self._store[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
            self._store.move_to_end(key)
            self._evict_if_over_capacity_locked()

            logger.debug(
                "cache.set",
                extra={
                    "key_hash": hash_key(key),
                    "size": len(self._store),
                    "ttl_s": ttl_seconds,
                },
            )

    def delete(self, key: str) -> bool:
        """Remove ``key``; returns True if an entry was present.

        Deleting a key that is being produced detaches the producer: its
        waiters still receive the outcome, but the value is not stored.
        """
        _check_key(key)
        with self._lock:
            return self._store.pop(key, None) is not None

    def has(self, key: str) -> bool:
        """Return True if ``key`` holds an unexpired value (no hit/miss counted)."""
        _check_key(key)
        with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.inflight is not None:
                return False
            if self._is_expired(entry):
                self._evict_single(key)
                return False
            return True

    def clear(self) -> None:
        """Remove all cached entries and reset counters."""

        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def invalidate(self, pattern: str) -> int:
        """Delete every key containing ``pattern``.

        Returns:
            Number of keys removed.
        """
        if not pattern:
            raise invalid_argument("pattern", "pattern must be a non-empty string", pattern)

        with self._lock:
            matched = [key for key in self._store if pattern in key]
            for key in matched:
                del self._store[key]

        if matched:
            logger.debug("cache.invalidated", extra={"keys_removed": len(matched)})
        return len(matched)

    def purge_expired(self) -> int:
        """Evict expired entries that were never re-read.

        Returns:
            Number of entries evicted.
        """
        with self._lock:
            return self._evict_expired_locked()

    def stats(self) -> dict[str, Any]:
        """Return lightweight cache metrics without exposing values."""

        with self._lock:
            keys = [key for key, entry in self._store.items() if entry.inflight is None]
            return {
                "max_entries": self._max_entries,
                "entries": len(keys),
                "inflight": len(self._store) - len(keys),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "keys": keys,
            }

    def get_or_set(self, key: str, producer: Callable[[], Any], ttl_seconds: float) -> Any:
        """Return the cached value, producing it at most once per miss.

        For threaded callers: concurrent misses on the same key block until
        the first caller's producer finishes, then all observe its outcome.
        A failure is raised to every waiter and never cached.

        Args:
            key: Cache key.
            producer: Blocking zero-argument callable computing the value.
            ttl_seconds: Seconds to keep the value; ``<= 0`` returns it uncached.

        Returns:
            The cached or freshly produced value.

        Raises:
            InvalidArgumentError: On invalid arguments, or when the producer
                returns an awaitable (use ``aget_or_set``).
        """
        _check_key(key)
        _check_ttl(ttl_seconds)
        _check_producer(producer)

        state, payload = self._claim(key)
        if state == "hit":
            return payload
        if state == "wait":
            return payload.result()

        entry: CacheEntry = payload
        end = self._metrics.start("cache.produce") if self._metrics else None
        try:
            value = producer()
            if inspect.isawaitable(value):
                if inspect.iscoroutine(value):
                    value.close()
                raise invalid_argument(
                    "producer",
                    "producer returned an awaitable; use aget_or_set for async producers",
                )
        except BaseException as exc:
            self._fail(key, entry, exc)
            raise
        finally:
            if end is not None:
                end()

        self._resolve(key, entry, value, ttl_seconds)
        return value

    async def aget_or_set(self, key: str, producer: Callable[[], Any], ttl_seconds: float) -> Any:
        """Asyncio counterpart of ``get_or_set``.

        Coroutine functions run as a task on the current loop; plain callables
        run in a worker thread. Every caller awaits the shared outcome through
        ``asyncio.shield``, so cancelling one caller (the producing one
        included) never cancels the producer; its result is still cached.
        """
        _check_key(key)
        _check_ttl(ttl_seconds)
        _check_producer(producer)

        state, payload = self._claim(key)
        if state == "hit":
            return payload
        if state == "wait":
            return await asyncio.shield(asyncio.wrap_future(payload))

        entry: CacheEntry = payload
        shared = entry.inflight
        task = asyncio.create_task(self._produce_async(key, entry, producer, ttl_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(asyncio.wrap_future(shared))

    async def _produce_async(
        self,
        key: str,
        entry: CacheEntry,
        producer: Callable[[], Any],
        ttl_seconds: float,
    ) -> None:
        end = self._metrics.start("cache.produce") if self._metrics else None
        try:
            if inspect.iscoroutinefunction(producer):
                value = await producer()
            else:
                value = await asyncio.to_thread(producer)
                if inspect.isawaitable(value):
                    value = await value
        except asyncio.CancelledError:
            self._abandon(key, entry)
            raise
        except Exception as exc:
            # The outcome is delivered through the shared future.
            self._fail(key, entry, exc)
            return
        except BaseException as exc:
            self._fail(key, entry, exc)
            raise
        finally:
            if end is not None:
                end()

        self._resolve(key, entry, value, ttl_seconds)

    def _claim(self, key: str) -> tuple[ClaimState, Any]:
        """Classify a lookup as a hit, a wait on a producer, or a new production.

        Returns:
            ``("hit", value)``, ``("wait", future)`` or ``("lead", entry)``.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is not None and entry.inflight is not None:
                self._count_miss(key, "pending")
                return "wait", entry.inflight

            if entry is not None and not self._is_expired(entry):
                self._count_hit(key)
                return "hit", entry.value

            if entry is not None:
                self._evict_single(key)
            self._count_miss(key, "expired" if entry is not None else "not_found")

            entry = CacheEntry(inflight=Future())
            self._store[key] = entry
            self._store.move_to_end(key)
            return "lead", entry

    def _resolve(self, key: str, entry: CacheEntry, value: Any, ttl_seconds: float) -> None:
        shared = entry.inflight
        with self._lock:
            # The entry may have been deleted or replaced while producing.
            if self._store.get(key) is entry:
                if ttl_seconds > 0:
                    entry.value = value
                    entry.expires_at = self._clock() + ttl_seconds
                    entry.inflight = None
                    self._store.move_to_end(key)
                    self._evict_if_over_capacity_locked()
                else:
                    del self._store[key]
        if shared is not None and not shared.done():
            shared.set_result(value)

    def _fail(self, key: str, entry: CacheEntry, exc: BaseException) -> None:
        with self._lock:
            if self._store.get(key) is entry:
                del self._store[key]
        logger.debug(
            "cache.producer_failed",
            extra={"key_hash": hash_key(key), "error_type": type(exc).__name__},
        )
        if entry.inflight is not None and not entry.inflight.done():
            entry.inflight.set_exception(exc)

    def _abandon(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            if self._store.get(key) is entry:
                del self._store[key]
        if entry.inflight is not None:
            entry.inflight.cancel()

    def _count_hit(self, key: str) -> None:
        self._hits += 1
        self._store.move_to_end(key)  # mark as recently used
        if self._metrics is not None:
            self._metrics.record("cache.hit", 1)
        logger.debug("cache.hit", extra={"key_hash": hash_key(key)})

    def _count_miss(self, key: str, reason: str) -> None:
        self._misses += 1
        if self._metrics is not None:
            self._metrics.record("cache.miss", 1)
        logger.debug("cache.miss", extra={"key_hash": hash_key(key), "reason": reason})

    def _evict_single(self, key: str) -> None:
        if key in self._store:
            self._store.pop(key, None)
            self._evictions += 1

    def _evict_expired_locked(self) -> int:
        now = self._clock()
        expired_keys = [
            k
            for k, entry in self._store.items()
            if entry.inflight is None and now >= entry.expires_at
        ]
        for key in expired_keys:
            self._evict_single(key)
        return len(expired_keys)

    def _evict_if_over_capacity_locked(self) -> None:
        if self._max_entries is None or len(self._store) <= self._max_entries:
            return

        self._evict_expired_locked()
        while len(self._store) > self._max_entries:
            # Oldest first; entries still being produced are never evicted.
            victim = next((k for k, e in self._store.items() if e.inflight is None), None)
            if victim is None:
                break
            self._evict_single(victim)

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() >= entry.expires_at


def _check_key(key: str) -> None:
    if not key or not isinstance(key, str):
        raise invalid_argument("key", "key must be a non-empty string", key)


def _check_ttl(ttl_seconds: float) -> None:
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, Real) or math.isnan(ttl_seconds):
        raise invalid_argument("ttl_seconds", "ttl_seconds must be a number", ttl_seconds)


def _check_producer(producer: Callable[[], Any]) -> None:
    if not callable(producer):
        raise invalid_argument("producer", "producer must be callable")


def build_cache_key(operation: str, *parts: Any, salt: str | None = None) -> str:
    """Build a stable cache key from an operation name and its arguments.

    Args:
        operation: Logical operation (e.g., ``validator_rankings``).
        *parts: JSON-serializable request signature (caller id, filters...).
        salt: Optional salt to partition keys (e.g., by RPC cluster).

    Returns:
        ``"<operation>:<sha256 hex digest>"``.
    """

    hasher = hashlib.sha256()
    hasher.update(json.dumps(parts, sort_keys=True, default=str).encode())
    if salt:
        hasher.update(salt.encode())
    return f"{operation}:{hasher.hexdigest()}"
