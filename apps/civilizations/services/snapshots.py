# apps/civilizations/services/snapshots.py
"""
Snapshot access for the fallback ladder.

`DjangoSnapshotStore` reads the typed snapshot tables built by
`refresh_civ_snapshots` and the named JSON `StatsSnapshot` entries written
back after live computations. One instance per process (`get_snapshot_store`);
call sites receive it by injection.
"""

from __future__ import annotations

import asyncio
from functools import cache as memoize_cache
from typing import TYPE_CHECKING, Any

import structlog
from django.db.models import Max
from django.utils import timezone

from apps.civilizations.models import (
    CivPatchSnapshot,
    CivStatsSnapshot,
    MapStatsSnapshot,
    StatsSnapshot,
)

from .protocols import SnapshotEntry

if TYPE_CHECKING:
    from .protocols import Row

log = structlog.get_logger(__name__).bind(component="SnapshotStore")


class DjangoSnapshotStore:
    def __init__(self) -> None:
        self._pending: set[asyncio.Task[None]] = set()

    # ─── named entries ──────────────────────────────────────────────

    async def read(self, key: str) -> SnapshotEntry | None:
        row = await StatsSnapshot.objects.filter(key=key).only("payload", "refreshed_at").afirst()
        if row is None:
            return None
        return SnapshotEntry(payload=row.payload, refreshed_at=row.refreshed_at)

    async def upsert(self, key: str, payload: Any) -> None:
        await StatsSnapshot.objects.aupdate_or_create(
            key=key,
            defaults={"payload": payload, "refreshed_at": timezone.now()},
        )

    def schedule_upsert(self, key: str, payload: Any) -> None:
        task = asyncio.create_task(self.upsert(key, payload), name=f"snapshot-write:{key}")
        self._pending.add(task)
        task.add_done_callback(self._on_written)

    def _on_written(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            log.warning("Snapshot write-back failed", task=task.get_name(), err=repr(exc))

    async def drain(self) -> None:
        """Wait for outstanding write-backs (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ─── typed tables ───────────────────────────────────────────────

    async def civ_totals(self, civ_lower: str) -> SnapshotEntry | None:
        snap = await CivStatsSnapshot.objects.filter(civ_lower=civ_lower).afirst()
        if snap is None:
            return None
        total = snap.total_picks
        payload = {
            "stats": {
                "totalPicks": total,
                "wins": snap.wins,
                "losses": snap.losses,
                "winRate": round(snap.win_rate, 4),
                "avgRating": round(snap.avg_rating, 1) if snap.avg_rating is not None else None,
                # Not part of the corpus-wide rebuild; filled from the live duration facet.
                "avgDurationMinutes": None,
            },
            "ageUpTimes": {
                "feudal": _round_s(snap.avg_feudal_s),
                "castle": _round_s(snap.avg_castle_s),
                "imperial": _round_s(snap.avg_imperial_s),
            },
        }
        return SnapshotEntry(payload=payload, refreshed_at=snap.refreshed_at)

    async def civ_summary(self, *, min_matches: int) -> SnapshotEntry | None:
        qs = CivStatsSnapshot.objects.filter(total_picks__gte=min_matches).order_by("-win_rate", "-total_picks")
        rows = [snap async for snap in qs]
        if not rows:
            return None
        refreshed_at = min(r.refreshed_at for r in rows)
        return SnapshotEntry(payload=[r.to_summary_json() for r in rows], refreshed_at=refreshed_at)

    async def map_summary(self, *, min_matches: int) -> SnapshotEntry | None:
        qs = MapStatsSnapshot.objects.filter(total_matches__gte=min_matches).order_by("-total_matches")
        rows = [snap async for snap in qs]
        if not rows:
            return None
        refreshed_at = min(r.refreshed_at for r in rows)
        return SnapshotEntry(payload=[r.to_summary_json() for r in rows], refreshed_at=refreshed_at)

    async def patch_standings(self, civ_lower: str) -> dict[str, Row]:
        qs = CivPatchSnapshot.objects.filter(civ_lower=civ_lower).values("patch", "rank", "total_civs", "play_rate")
        return {
            r["patch"]: {"rank": r["rank"], "totalCivs": r["total_civs"], "playRate": round(r["play_rate"], 4)}
            async for r in qs
        }

    async def last_refreshed(self) -> Any:
        return (await CivStatsSnapshot.objects.aaggregate(last=Max("refreshed_at")))["last"]


def _round_s(value: float | None) -> float | None:
    return round(value) if value is not None else None


@memoize_cache
def get_snapshot_store() -> DjangoSnapshotStore:
    return DjangoSnapshotStore()
