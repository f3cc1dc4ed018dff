"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable so no .env file is loaded and
pins the settings the tests rely on.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("THROTTLE_ENABLED", "true")
os.environ.setdefault("THROTTLE_INCLUDE_HEADERS", "true")
os.environ.setdefault("THROTTLE_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

from throttlecache.core.clock import ManualClock  # noqa: E402
from throttlecache.core.metrics import MetricsRecorder  # noqa: E402


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock starting at an arbitrary non-zero instant."""
    return ManualClock(start=1_000.0)


@pytest.fixture
def metrics() -> MetricsRecorder:
    return MetricsRecorder()
