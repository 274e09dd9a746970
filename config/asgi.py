"""
Django 5 ASGI application wrapped in Starlette for lifespan and health routes.
"""

from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import structlog
from asgiref.sync import sync_to_async
from django.core.asgi import get_asgi_application
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import BaseRoute, Mount, Route

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from django.db.backends.base.base import BaseDatabaseWrapper

# --- Set up Django environment
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")
django_app = get_asgi_application()

# Imports below need configured settings.
from django.conf import settings  # noqa: E402
from django.core.cache import cache  # noqa: E402
from django.db import connections  # noqa: E402

from apps.civilizations.services.snapshots import get_snapshot_store  # noqa: E402
from apps.core.views import health_check  # noqa: E402

# --- Constants
WARMUP_CACHE_KEY = "system:warmup:test"
WARMUP_CACHE_TTL = 30
DB_WARMUP_TIMEOUT = 5.0
CACHE_WARMUP_TIMEOUT = 3.0
SHUTDOWN_TIMEOUT = 10.0

logger = structlog.get_logger(__name__)


class WarmupError(Exception):
    """Raised when a warmup operation fails."""


async def _test_database_connection() -> None:
    def _db_test() -> None:
        conn: BaseDatabaseWrapper = connections["default"]
        conn.ensure_connection()
        with conn.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()

    try:
        await asyncio.wait_for(asyncio.to_thread(_db_test), timeout=DB_WARMUP_TIMEOUT)
    except TimeoutError as e:
        msg = f"Database connection timed out after {DB_WARMUP_TIMEOUT}s"
        raise WarmupError(msg) from e
    except Exception as e:
        msg = f"Database connection failed: {e}"
        raise WarmupError(msg) from e


async def _test_cache_system() -> None:
    test_value = f"warmup_{time.time()}"

    @sync_to_async
    def cache_test() -> None:
        cache.set(WARMUP_CACHE_KEY, test_value, WARMUP_CACHE_TTL)
        result = cache.get(WARMUP_CACHE_KEY)
        if result != test_value:
            msg = f"Cache verification failed: expected '{test_value}', got '{result}'"
            raise WarmupError(msg)

    try:
        await asyncio.wait_for(cache_test(), timeout=CACHE_WARMUP_TIMEOUT)
    except TimeoutError as e:
        msg = f"Cache operation timed out after {CACHE_WARMUP_TIMEOUT}s"
        raise WarmupError(msg) from e


async def _warm_up_application() -> None:
    """
    Runs warmup checks concurrently.

    Only the database is required; without Redis every request is a cache
    miss and is served from snapshots or live data.
    """
    logger.info("Starting application warm-up...")
    start_time = time.monotonic()
    tasks = {
        "database": asyncio.create_task(_test_database_connection()),
        "cache": asyncio.create_task(_test_cache_system()),
    }
    results = await asyncio.gather(*tasks.values(), return_exceptions=True)
    for name, result in zip(tasks.keys(), results, strict=True):
        if isinstance(result, Exception):
            logger.warning("Component warm-up failed", component=name, error=str(result))
        else:
            logger.info("Component warmed up", component=name)
    if isinstance(results[0], Exception):
        raise results[0]
    logger.info("Application warm-up finished", duration_s=f"{time.monotonic() - start_time:.2f}")


# --- Centralized Lifespan Manager ---
@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncIterator[None]:
    """Warm-up on startup; flush pending snapshot write-backs and close connections on shutdown."""
    logger.info("ASGI application starting up...")
    try:
        await _warm_up_application()
    except WarmupError as e:
        logger.error("Critical error during application startup. Aborting.", error=str(e), exc_info=True)
        raise
    logger.info("Application startup complete. Ready to serve requests.")
    yield
    logger.info("ASGI application shutting down...")
    try:
        async with asyncio.timeout(SHUTDOWN_TIMEOUT):
            await get_snapshot_store().drain()
            with suppress(Exception):
                await sync_to_async(connections.close_all)()
                logger.info("Database connections closed")
    except TimeoutError:
        logger.warning("Shutdown timed out; pending snapshot writes dropped", timeout_s=SHUTDOWN_TIMEOUT)
    logger.info("ASGI application shutdown complete.")


# --- Application Factory Functions ---
def create_middleware() -> list[Middleware]:
    return [
        Middleware(
            CORSMiddleware,
            allow_origins=getattr(settings, "CORS_ALLOWED_ORIGINS", ["*"]),
            allow_methods=["GET", "HEAD", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["X-Cache-Status", "X-Stats-Degraded"],
        ),
    ]


def create_routes() -> list[BaseRoute]:
    return [
        Route("/health", endpoint=health_check, methods=["GET", "HEAD"]),
        Mount("/", app=django_app),
    ]


# --- Main Application Instance ---
application = Starlette(
    debug=settings.DEBUG,
    routes=create_routes(),
    middleware=create_middleware(),
    lifespan=lifespan,
)
