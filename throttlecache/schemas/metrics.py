"""Pydantic schemas for the metrics/status endpoint."""

from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field


class MetricStats(BaseModel):
    """Aggregated statistics for one named metric."""

    count: int = Field(..., description="Number of recorded samples.")
    total: float = Field(..., description="Sum of all samples.")
    min: float = Field(..., description="Smallest sample.")
    max: float = Field(..., description="Largest sample.")
    average: float = Field(..., description="total / count.")


class CacheStats(BaseModel):
    """Result cache counters (values and keys are never exposed)."""

    entries: int = Field(..., description="Cached values, including not yet swept expired ones.")
    inflight: int = Field(..., description="Keys whose producer is currently running.")
    hits: int
    misses: int
    evictions: int
    max_entries: int | None = Field(
        default=None, description="LRU bound on cached values (null for unlimited)."
    )


class MetricsResponse(BaseModel):
    """Snapshot served by ``GET /health/metrics``."""

    metrics: Dict[str, MetricStats] = Field(
        default_factory=dict,
        description="Operation metrics keyed by name (durations in milliseconds).",
    )
    cache: CacheStats
    rate_limited_keys: int = Field(
        ..., description="Keys currently tracked by the sliding window limiter."
    )
