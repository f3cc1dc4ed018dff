"""Application factory for FastAPI app.

Centralizes app construction (state, middleware, handlers, routers) to
improve testability. The throttled result cache is created here and owned by
the app (``app.state.throttled_cache``) for its whole lifetime.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from throttlecache.api.routes import health_router
from throttlecache.core.config import Settings, settings
from throttlecache.core.exception_handlers import setup_exception_handlers
from throttlecache.core.logging import configure_logging
from throttlecache.core.middleware import request_id_middleware
from throttlecache.services.throttled_cache import (
    ThrottledCacheMiddleware,
    build_throttled_cache,
)

logger = logging.getLogger(__name__)


def sweep_expired(throttled: ThrottledCacheMiddleware) -> tuple[int, int]:
    """Reclaim memory held by expired cache entries and idle limiter keys.

    Returns:
        Tuple of (cache_entries_removed, limiter_keys_removed).
    """
    return throttled.cache.purge_expired(), throttled.limiter.purge_idle()


async def _sweep_loop(throttled: ThrottledCacheMiddleware, interval_seconds: float) -> None:
    """Periodic sweep; expiry correctness never depends on it."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            expired, idle = await asyncio.to_thread(sweep_expired, throttled)
            if expired or idle:
                logger.debug(
                    "throttle.sweep",
                    extra={"cache_entries_removed": expired, "limiter_keys_removed": idle},
                )
        except Exception:
            logger.exception("throttle.sweep_error")


def create_app(
    app_settings: Settings | None = None,
    *,
    throttled: ThrottledCacheMiddleware | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to build from; defaults to the global settings.
        throttled: Pre-built middleware (tests inject one with a manual clock).

    Returns:
        Configured FastAPI app with state, middleware, handlers and routers.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    throttled = throttled or build_throttled_cache(cfg.throttle)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweep_task: asyncio.Task | None = None
        if cfg.throttle.sweep_interval_seconds > 0:
            sweep_task = asyncio.create_task(
                _sweep_loop(throttled, cfg.throttle.sweep_interval_seconds)
            )
        app.state.sweep_task = sweep_task
        logger.info("app_started", extra={"environment": cfg.app_env})
        try:
            yield
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep_task
            logger.info("app_stopped")

    app = FastAPI(
        title="Throttle Cache API",
        description=(
            "Rate limited, single-flight cached access to expensive upstream "
            "operations (Solana RPC calls, aggregate queries)."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.throttled_cache = throttled

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)

    return app
