"""Rate limiter interfaces.

The throttling service depends on this abstraction (not the concrete
implementation) so we can swap storage backends later (e.g., Redis) with
minimal changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        retry_after_seconds: Suggested wait time in seconds when blocked.
        reset_after_seconds: Seconds until the oldest counted request leaves
            the window (0 when nothing is counted).
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None
    reset_after_seconds: int = 0


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    def admit(self, key: str, capacity: int, window_seconds: float) -> RateLimitResult:
        """Check and, when allowed, count one request for a given key.

        Args:
            key: Unique identifier (e.g., API key, IP address, operation).
            capacity: Max requests admitted within any trailing window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError

    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget all counted requests for ``key``."""
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        """Forget all counted requests for every key."""
        raise NotImplementedError

    @abstractmethod
    def __len__(self) -> int:
        """Number of keys currently tracked."""
        raise NotImplementedError

    @abstractmethod
    def purge_idle(self) -> int:
        """Drop records whose window has emptied.

        Returns:
            Number of keys removed.
        """
        raise NotImplementedError
