# apps/core/views/health.py

from __future__ import annotations

import asyncio
import time
from asyncio import to_thread
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, connections
from django.utils import timezone
from starlette.responses import JSONResponse

from apps.civilizations.conf import STATS_SETTINGS
from apps.civilizations.services.snapshots import get_snapshot_store

if TYPE_CHECKING:
    from starlette.requests import Request

# Statuses that keep the service in rotation.
_SERVING = {"healthy", "degraded"}


# --------------------------------------------------------------------------- helpers
def _simple_db_query() -> None:
    """Gets a connection and performs a simple query within the same worker thread."""
    conn = connections["default"]
    conn.ensure_connection()
    with conn.cursor() as cursor:
        cursor.execute("SELECT 1")
        cursor.fetchone()


async def _check_database() -> dict[str, str]:
    try:
        await to_thread(_simple_db_query)
        return {"status": "healthy"}
    except DatabaseError as exc:
        return {"status": "unhealthy", "error": str(exc)}


async def _check_cache() -> dict[str, str]:
    key = f"health:{int(time.time())}"

    def check_cache_sync() -> bool:
        cache.set(key, "ok", 10)
        ok = cache.get(key) == "ok"
        cache.delete(key)
        return ok

    try:
        if await to_thread(check_cache_sync):
            return {"status": "healthy"}
        # Redis errors are swallowed by django-redis; requests fall through to live data.
        return {"status": "degraded", "error": "Cache round-trip check failed"}
    except Exception as exc:
        return {"status": "degraded", "error": str(exc)}


async def _check_snapshots() -> dict[str, str | float | None]:
    """Snapshot tables are optional; stale or missing ones only degrade latency."""
    try:
        last = await get_snapshot_store().last_refreshed()
    except Exception as exc:
        return {"status": "degraded", "error": str(exc)}
    if last is None:
        return {"status": "degraded", "error": "No snapshots built yet", "age_s": None}
    age_s = (timezone.now() - last).total_seconds()
    status = "healthy" if age_s <= STATS_SETTINGS.table_staleness_s else "degraded"
    return {"status": status, "age_s": round(age_s, 1)}


# --------------------------------------------------------------------------- view
async def health_check(request: Request) -> JSONResponse:
    """
    Comprehensive health endpoint.
    • `?check=basic`  → liveness-only.
    """
    start_view = time.perf_counter()
    base_payload = {
        "timestamp": timezone.now().isoformat(),
        "version": getattr(settings, "APP_VERSION", "unknown"),
        "environment": getattr(settings, "ENVIRONMENT", "unknown"),
    }

    if request.query_params.get("check") == "basic":
        return JSONResponse({"status": "ok", **base_payload})

    db_result, cache_result, snapshot_result = await asyncio.gather(
        _check_database(),
        _check_cache(),
        _check_snapshots(),
    )
    checks = {
        "database": db_result,
        "cache": cache_result,
        "snapshots": snapshot_result,
    }

    serving = all(v["status"] in _SERVING for v in checks.values())
    if not serving:
        overall = "unhealthy"
    elif all(v["status"] == "healthy" for v in checks.values()):
        overall = "healthy"
    else:
        overall = "degraded"

    response = {
        "status": overall,
        "checks": checks,
        "response_time_ms": round((time.perf_counter() - start_view) * 1000, 2),
        **base_payload,
    }
    return JSONResponse(response, status_code=200 if serving else 503)
