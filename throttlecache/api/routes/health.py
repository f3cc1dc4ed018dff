from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from throttlecache.core.rate_limit import get_throttled_cache
from throttlecache.schemas.metrics import CacheStats, MetricsResponse, MetricStats
from throttlecache.services.throttled_cache import ThrottledCacheMiddleware

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.
    Used by load balancers and monitoring systems to determine service health.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/metrics", response_model=MetricsResponse)
def metrics_snapshot(
    throttled: Annotated[ThrottledCacheMiddleware, Depends(get_throttled_cache)],
) -> MetricsResponse:
    """Operation timings plus limiter and cache counters for this process."""

    cache_stats = throttled.cache.stats()
    cache_stats.pop("keys", None)
    return MetricsResponse(
        metrics={
            name: MetricStats(**sample)
            for name, sample in throttled.get_all_metrics().items()
        },
        cache=CacheStats(**cache_stats),
        rate_limited_keys=len(throttled.limiter),
    )
