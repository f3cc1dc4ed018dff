"""Rate limiting adapters.

This package provides a small abstraction layer so the service can start with
an in-memory sliding window limiter and later migrate to Redis or another
shared store without changing the throttling service or the API layer.
"""

from throttlecache.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from throttlecache.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter

__all__ = ["AbstractRateLimiter", "InMemorySlidingWindowRateLimiter", "RateLimitResult"]
