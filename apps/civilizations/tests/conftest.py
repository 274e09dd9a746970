from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import pytest
from django.utils import timezone

from apps.civilizations.conf import MinSupport, StageBudgets, StatsEngineSettings
from apps.civilizations.services.protocols import SnapshotEntry
from apps.civilizations.services.stats_service import CivStatsService
from common import cache_utils
from common.text_utils import shadow_key


def _keyed(stored: str, display: str | None, key: str, name: str | None) -> bool:
    """The stored shadow key matches, or it is blank and the display name matches `name`."""
    if stored:
        return stored == key
    return bool(name) and (display or "").lower() == name.strip().lower()


class FakeRepository:
    """In-memory `StatsRepository`. `delay_s` / `error` simulate a slow or failing store."""

    def __init__(self, participations: list[dict[str, Any]], matches: list[dict[str, Any]]) -> None:
        self.participations = participations
        self.matches = {m["game_id"]: m for m in matches}
        self.delay_s = 0.0
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def _tick(self, name: str) -> None:
        self.calls.append(name)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error

    def _in_cohort(self, row: dict[str, Any], match: dict[str, Any] | None, plan) -> bool:
        cohort = plan.cohort
        stored_civ = row.get("civ_lower", shadow_key(row["civ"]))
        if cohort.civ_lower and not _keyed(stored_civ, row["civ"], cohort.civ_lower, cohort.civ_name):
            return False
        if not (cohort.map_lower or cohort.leaderboard or cohort.patch):
            return True
        if match is None:
            return False
        stored_map = match.get("map_lower", shadow_key(match.get("map")))
        if cohort.map_lower and not _keyed(stored_map, match.get("map"), cohort.map_lower, cohort.map_name):
            return False
        if cohort.leaderboard and match.get("leaderboard") != cohort.leaderboard:
            return False
        return not (cohort.patch and match.get("patch") != cohort.patch)

    async def sample_participations(self, plan) -> list[dict[str, Any]]:
        await self._tick(f"participations:{plan.shape}")
        rows = []
        for p in self.participations:
            match = self.matches.get(p["game_id"])
            if not self._in_cohort(p, match, plan):
                continue
            if plan.needs_join and match is None and not plan.keep_unmatched:
                continue
            if any(not p.get(column) for column in plan.non_blank):
                continue
            rows.append({**p, **{f: (match or {}).get(f) for f in plan.match_fields}})
        return rows[: plan.size]

    async def sample_matches(self, plan) -> list[dict[str, Any]]:
        await self._tick(f"matches:{plan.shape}")
        cohort = plan.cohort
        rows = [
            {"map_lower": shadow_key(m.get("map")), **m}
            for m in self.matches.values()
        ]
        if cohort.map_lower:
            rows = [m for m in rows if _keyed(m["map_lower"], m.get("map"), cohort.map_lower, cohort.map_name)]
        return rows[: plan.size]

    async def participations_in_games(self, game_ids: list[str], *, budget_s: float) -> list[dict[str, Any]]:
        await self._tick("in_games")
        wanted = set(game_ids)
        return [p for p in self.participations if p["game_id"] in wanted]

    async def distinct_values(self, *, patch_limit: int, budget_s: float) -> dict[str, Any]:
        await self._tick("distinct_values")
        matches = list(self.matches.values())
        ratings = [p["old_rating"] for p in self.participations if (p.get("old_rating") or 0) > 0]
        patches = sorted({m["patch"] for m in matches if m.get("patch")}, reverse=True)
        stats = {"min": min(ratings), "max": max(ratings), "avg": sum(ratings) / len(ratings)} if ratings else {}
        return {
            "civs": sorted({p["civ"] for p in self.participations if p.get("civ")}),
            "leaderboards": sorted({m["leaderboard"] for m in matches if m.get("leaderboard")}),
            "patches": patches[:patch_limit],
            "maps": sorted({m["map"] for m in matches if m.get("map")}),
            "ratings": stats,
        }


class FakeSnapshotStore:
    def __init__(self) -> None:
        self.entries: dict[str, SnapshotEntry] = {}
        self.totals: dict[str, SnapshotEntry] = {}
        self.summary: SnapshotEntry | None = None
        self.maps: SnapshotEntry | None = None
        self.standings: dict[str, dict[str, Any]] = {}
        self.written: dict[str, Any] = {}
        self.delay_s = 0.0

    async def _tick(self) -> None:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

    async def read(self, key: str) -> SnapshotEntry | None:
        await self._tick()
        return self.entries.get(key)

    def schedule_upsert(self, key: str, payload: Any) -> None:
        self.written[key] = payload

    async def civ_totals(self, civ_lower: str) -> SnapshotEntry | None:
        await self._tick()
        return self.totals.get(civ_lower)

    async def civ_summary(self, *, min_matches: int) -> SnapshotEntry | None:
        await self._tick()
        return self.summary

    async def map_summary(self, *, min_matches: int) -> SnapshotEntry | None:
        await self._tick()
        return self.maps

    async def patch_standings(self, civ_lower: str) -> dict[str, dict[str, Any]]:
        return self.standings.get(civ_lower, {})


class FakeLookup:
    """`shadow` maps lower-cased keys to names; `exact` holds names only findable verbatim."""

    def __init__(self, shadow: dict[str, str] | None = None, exact: set[str] | None = None) -> None:
        self.shadow = shadow or {}
        self.exact = exact or set()
        self.delay_s = 0.0
        self.calls: list[tuple[str, str]] = []

    async def by_shadow_key(self, key: str) -> str | None:
        self.calls.append(("shadow", key))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self.shadow.get(key)

    async def by_exact_name(self, name: str) -> str | None:
        self.calls.append(("exact", name))
        if name in self.exact:
            return name
        return next((v for v in self.shadow.values() if v == name), None)


def make_game(
    game_id: str,
    sides: list[tuple[str, int, bool]],
    *,
    map_name: str = "Arabia",
    duration: int | None = 1800,
    patch: str = "101129",
    rating: int = 1100,
) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """One match plus its participation rows; `sides` is `(civ, team, won)` per player."""
    players = [
        {
            "game_id": game_id,
            "civ": civ,
            "team": team,
            "winner": won,
            "old_rating": rating,
            "feudal_age_uptime": 640.0,
            "castle_age_uptime": 990.0,
            "imperial_age_uptime": 1500.0,
        }
        for civ, team, won in sides
    ]
    match = {
        "game_id": game_id,
        "map": map_name,
        "duration": duration,
        "avg_elo": float(rating),
        "num_players": len(sides),
        "patch": patch,
        "leaderboard": "rm_1v1" if len(sides) == 2 else "rm_team",
    }
    return players, match


def build_corpus() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Britons beat Franks 6 times out of 8 and lose every game to Mayans."""
    participations: list[dict[str, Any]] = []
    matches: list[dict[str, Any]] = []
    counter = itertools.count(1)

    def add(*args, **kwargs) -> None:
        players, match = make_game(f"g{next(counter)}", *args, **kwargs)
        participations.extend(players)
        matches.append(match)

    for i in range(8):
        add([("Britons", 1, i < 6), ("Franks", 2, i >= 6)], duration=1800 + i * 60)
    for _ in range(5):
        add([("Britons", 1, False), ("Mayans", 2, True)], map_name="Arena", duration=2_400_000)
    return participations, matches


FAST_SETTINGS = StatsEngineSettings(
    min_support=MinSupport(opening=3),
    budgets=StageBudgets(
        resolve_s=0.2,
        snapshot_s=0.2,
        basic_s=0.3,
        rating_s=0.3,
        patch_s=0.3,
        duration_s=0.3,
        matchups_s=0.3,
        maps_s=0.3,
        summary_s=0.3,
        openings_s=0.3,
        filters_s=0.3,
    ),
)


@pytest.fixture
def corpus() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    return build_corpus()


@pytest.fixture
def repo(corpus) -> FakeRepository:
    participations, matches = corpus
    return FakeRepository(participations, matches)


@pytest.fixture
def snapshots() -> FakeSnapshotStore:
    return FakeSnapshotStore()


@pytest.fixture
def civ_lookup() -> FakeLookup:
    return FakeLookup({"britons": "Britons", "franks": "Franks", "mayans": "Mayans"})


@pytest.fixture
def map_lookup() -> FakeLookup:
    return FakeLookup({"arabia": "Arabia", "arena": "Arena"})


@pytest.fixture
def service(repo, snapshots, civ_lookup, map_lookup) -> CivStatsService:
    return CivStatsService(repo, snapshots, civ_lookup=civ_lookup, map_lookup=map_lookup, settings=FAST_SETTINGS)


@pytest.fixture
def stale_entry():
    def _make(payload: Any, *, age_s: float) -> SnapshotEntry:
        return SnapshotEntry(payload=payload, refreshed_at=timezone.now() - timedelta(seconds=age_s))

    return _make


@pytest.fixture
def no_redis_lock(monkeypatch):
    """Single-flight lock that never touches Redis."""

    @asynccontextmanager
    async def _lock(key: str, **kwargs):
        yield

    monkeypatch.setattr(cache_utils, "redis_lock", _lock)


@pytest.fixture
def game_factory():
    return make_game
