"""Throttled execution helpers for FastAPI routes.

This module wires the throttled result cache into the HTTP layer.

Design goals:
- Minimal coupling: routes receive the middleware through a dependency and
  call ``run_throttled`` with a key and a producer.
- Explicit ownership: the middleware lives on ``app.state``, created by the
  app factory; there is no module-level instance.
- HTTP framing stays here: a ``RateLimited`` result becomes a 429 with
  ``Retry-After`` and ``X-RateLimit-*`` headers.

Key strategy:
- Per API key when the X-API-Key header is present (hashed, never raw).
- Otherwise fall back to client IP.
- Always namespaced by the logical operation so quotas are per operation.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import Request, Response

from throttlecache.core.config import settings
from throttlecache.core.errors import RateLimitExceededError
from throttlecache.core.logging import hash_key
from throttlecache.services.throttled_cache import (
    Failed,
    RateLimited,
    ThrottledCacheMiddleware,
    ThrottlePolicy,
)

logger = logging.getLogger(__name__)


def get_throttled_cache(request: Request) -> ThrottledCacheMiddleware:
    """FastAPI dependency returning the app's throttled cache instance.

    Returns:
        ThrottledCacheMiddleware: Instance created by ``create_app``.
    """

    return request.app.state.throttled_cache


def build_caller_key(request: Request, operation: str, x_api_key: str | None = None) -> str:
    """Build the limiter/cache key for the current request.

    Args:
        request: FastAPI request.
        operation: Logical operation name (e.g., ``validator_rankings``).
        x_api_key: API key value from the X-API-Key header.

    Returns:
        str: Namespaced key.
    """

    if x_api_key:
        return f"{operation}:api_key:{hash_key(x_api_key)}"

    client_host = request.client.host if request.client else "unknown"
    return f"{operation}:ip:{client_host}"


def quota_headers(limit: int, remaining: int, reset_after_seconds: int) -> dict[str, str]:
    """``X-RateLimit-*`` headers, or nothing when headers are disabled."""

    if not settings.throttle.include_headers:
        return {}
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_after_seconds),
    }


def rate_limit_headers(result: RateLimited) -> dict[str, str]:
    """Headers advertised on a 429 response."""

    headers = quota_headers(result.limit, result.remaining, result.retry_after_seconds)
    if headers:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


async def run_throttled(
    request: Request,
    key: str,
    producer: Callable[[], Any],
    *,
    operation: str,
    policy: ThrottlePolicy | None = None,
    response: Response | None = None,
) -> Any:
    """Execute ``producer`` through the app's throttled cache.

    When throttling is disabled in settings, the producer still goes through
    the cache but with a policy that never rejects.

    Args:
        request: FastAPI request (used to reach ``app.state``).
        key: Caller/request key (see ``build_caller_key``).
        producer: Coroutine function or blocking callable.
        operation: Logical operation name used for metrics.
        policy: Per-call policy; defaults to the configured defaults.
        response: The route's ``Response``; when given, admitted calls get
            ``X-RateLimit-*`` headers describing the remaining quota.

    Returns:
        The produced or cached value.

    Raises:
        RateLimitExceededError: When the caller exhausted its quota.
        Exception: The producer's own error, unmodified.
    """

    throttled = get_throttled_cache(request)
    policy = policy or ThrottlePolicy.from_settings(settings.throttle)

    if not settings.throttle.enabled:
        value = await throttled.cache.aget_or_set(key, producer, policy.ttl_seconds)
        return value

    result = await throttled.execute(key, policy, producer, operation=operation)

    if isinstance(result, RateLimited):
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": hash_key(key),
                "operation": operation,
                "limit": result.limit,
                "window_s": policy.window_seconds,
                "retry_after_s": result.retry_after_seconds,
            },
        )
        raise RateLimitExceededError(
            code="rate_limited",
            message="Rate limit exceeded. Try again later.",
            details={
                "retry_after": result.retry_after_seconds,
                "limit": result.limit,
                "remaining": result.remaining,
            },
        )

    if isinstance(result, Failed):
        raise result.error

    if response is not None and result.quota is not None:
        quota = result.quota
        response.headers.update(
            quota_headers(quota.limit, quota.remaining, quota.reset_after_seconds)
        )
    return result.value
