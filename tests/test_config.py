"""Tests for environment-driven throttle settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from throttlecache.core.config import LogSettings, Settings, ThrottleSettings
from throttlecache.core.clock import ManualClock


def test_throttle_settings_read_prefixed_env(monkeypatch):
    monkeypatch.setenv("THROTTLE_DEFAULT_CAPACITY", "5")
    monkeypatch.setenv("THROTTLE_DEFAULT_WINDOW_SECONDS", "10")
    monkeypatch.setenv("THROTTLE_EXEMPT_CACHE_HITS", "true")

    cfg = ThrottleSettings()

    assert cfg.default_capacity == 5
    assert cfg.default_window_seconds == 10
    assert cfg.exempt_cache_hits is True


def test_throttle_settings_reject_out_of_range_values(monkeypatch):
    monkeypatch.setenv("THROTTLE_DEFAULT_CAPACITY", "0")

    with pytest.raises(ValidationError):
        ThrottleSettings()


def test_settings_compose_sections(monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_ID_HEADER", "X-Correlation-ID")

    cfg = Settings()

    assert isinstance(cfg.log, LogSettings)
    assert cfg.log.request_id_header == "X-Correlation-ID"
    assert cfg.throttle.sweep_interval_seconds == 0


def test_manual_clock_only_moves_forward():
    clock = ManualClock(start=10.0)

    clock.advance(2.5)
    assert clock() == 12.5

    with pytest.raises(ValueError):
        clock.advance(-1)

    clock.set(100.0)
    assert clock() == 100.0
