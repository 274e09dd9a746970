# apps/civilizations/services/stats_service.py
"""
Request-level orchestration for civilization and map statistics.

Each public method resolves the name it is scoped to, runs every facet of
the response through its own `FallbackLadder` (concurrently where there is
more than one), and assembles the payload with a `meta` block describing
where each facet came from, the sample sizes and the minimum-support
thresholds in force.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from functools import cache as memoize_cache
from typing import TYPE_CHECKING, Any

import structlog
from django.utils import timezone

from apps.civilizations.conf import SNAPSHOT_KEYS, STATS_SETTINGS, StatsEngineSettings
from common.text_utils import recapitalize, shadow_key

from . import fallback
from .identity import IdentityResolver
from .matchups import best_against, build_matchup_edges, worst_against
from .queries import CivNameLookup, DjangoStatsRepository, MapNameLookup
from .resilience import FallbackLadder, LadderResult
from .sampling import (
    CohortFilter,
    Shape,
    aggregate_basic,
    aggregate_duration,
    aggregate_filter_options,
    aggregate_map_detail,
    aggregate_map_summary,
    aggregate_maps,
    aggregate_openings,
    aggregate_patch,
    aggregate_rating,
    aggregate_summary,
    plan_for,
)
from .snapshots import get_snapshot_store
from .units import plausible_average, to_minutes

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .protocols import NameLookup, SnapshotEntry, SnapshotStore, StatsRepository

log = structlog.get_logger(__name__).bind(component="CivStatsService")


@dataclass(slots=True, frozen=True)
class SummaryFilters:
    leaderboard: str | None = None
    patch: str | None = None
    min_matches: int | None = None


class CivStatsService:
    def __init__(
        self,
        repo: StatsRepository,
        snapshots: SnapshotStore,
        *,
        civ_lookup: NameLookup,
        map_lookup: NameLookup,
        settings: StatsEngineSettings = STATS_SETTINGS,
    ) -> None:
        self.repo = repo
        self.snapshots = snapshots
        self.settings = settings
        self.civs = IdentityResolver(civ_lookup, kind="civilization")
        self.maps = IdentityResolver(map_lookup, kind="map")

    # ────────────────────────────────────────────────────────────────
    #  PUBLIC OPERATIONS
    # ────────────────────────────────────────────────────────────────

    async def get_civilization_summary(self, filters: SummaryFilters | None = None) -> dict[str, Any]:
        filters = filters or SummaryFilters()
        started = time.perf_counter()
        min_matches = filters.min_matches or self.settings.min_support.summary
        cohort = CohortFilter(leaderboard=filters.leaderboard, patch=filters.patch)
        plan = plan_for(Shape.SUMMARY, cohort, settings=self.settings)
        limit = self.settings.summary_limit

        async def live() -> list[dict[str, Any]]:
            rows = await self.repo.sample_participations(plan)
            return aggregate_summary(rows, min_matches=min_matches, limit=limit)

        async def read() -> SnapshotEntry | None:
            return await self.snapshots.civ_summary(min_matches=min_matches)

        # The snapshot table is corpus-wide; filtered cohorts always go live.
        result = await self._table_ladder("summary", plan.budget_s).run(
            read_snapshot=None if cohort.as_dict() else read,
            compute_live=live,
            static_fallback=fallback.empty_list,
        )
        return {
            "civilizations": result.payload[:limit],
            "meta": self._meta(
                {"summary": result},
                started,
                sample_sizes={"summary": plan.size},
                min_support={"summary": min_matches},
                filters=cohort.as_dict(),
            ),
        }

    async def get_civilization_detail(self, name: str) -> dict[str, Any]:
        started = time.perf_counter()
        civ, unverified = await self._resolve(self.civs, name)
        key = shadow_key(civ)
        cohort = CohortFilter(civ_lower=key, civ_name=civ)
        support = self.settings.min_support
        plans = {
            shape: plan_for(shape, cohort, settings=self.settings)
            for shape in (Shape.BASIC, Shape.RATING, Shape.PATCH, Shape.DURATION)
        }

        async def live_basic() -> dict[str, Any]:
            return aggregate_basic(await self.repo.sample_participations(plans[Shape.BASIC]))

        async def live_rating() -> list[dict[str, Any]]:
            rows = await self.repo.sample_participations(plans[Shape.RATING])
            return [b.to_json() for b in aggregate_rating(rows, min_support=support.bucket)]

        async def live_patch() -> list[dict[str, Any]]:
            rows, standings = await asyncio.gather(
                self.repo.sample_participations(plans[Shape.PATCH]),
                self._patch_standings(key),
            )
            buckets = aggregate_patch(
                rows,
                min_support=support.patch,
                limit=self.settings.patch_limit,
                standings=standings,
            )
            return [b.to_json() for b in buckets]

        async def live_duration() -> dict[str, Any]:
            rows = await self.repo.sample_participations(plans[Shape.DURATION])
            return {
                "buckets": [b.to_json() for b in aggregate_duration(rows, min_support=support.bucket)],
                "avgDurationMinutes": plausible_average(to_minutes(r.get("duration")) for r in rows),
            }

        basic, rating, patch, duration = await asyncio.gather(
            self._table_ladder("stats", plans[Shape.BASIC].budget_s).run(
                read_snapshot=lambda: self.snapshots.civ_totals(key),
                compute_live=live_basic,
                static_fallback=fallback.basic,
            ),
            self._entry_ladder("ratingBuckets", plans[Shape.RATING].budget_s).run(
                read_snapshot=self._reader(SNAPSHOT_KEYS["civ_rating"].format(civ=key)),
                compute_live=live_rating,
                static_fallback=fallback.rating_buckets,
                write_back=self._writer(SNAPSHOT_KEYS["civ_rating"].format(civ=key)),
            ),
            self._entry_ladder("patchBreakdown", plans[Shape.PATCH].budget_s).run(
                read_snapshot=self._reader(SNAPSHOT_KEYS["civ_patch"].format(civ=key)),
                compute_live=live_patch,
                static_fallback=fallback.empty_list,
                write_back=self._writer(SNAPSHOT_KEYS["civ_patch"].format(civ=key)),
            ),
            self._entry_ladder("durationBuckets", plans[Shape.DURATION].budget_s).run(
                read_snapshot=self._reader(SNAPSHOT_KEYS["civ_duration"].format(civ=key)),
                compute_live=live_duration,
                static_fallback=lambda: {"buckets": fallback.duration_buckets(), "avgDurationMinutes": None},
                write_back=self._writer(SNAPSHOT_KEYS["civ_duration"].format(civ=key)),
            ),
        )

        stats = dict(basic.payload["stats"])
        if stats.get("avgDurationMinutes") is None:
            stats["avgDurationMinutes"] = duration.payload.get("avgDurationMinutes")

        meta = self._meta(
            {"stats": basic, "ratingBuckets": rating, "patchBreakdown": patch, "durationBuckets": duration},
            started,
            sample_sizes={shape.value: plan.size for shape, plan in plans.items()},
            min_support={"bucket": support.bucket, "patch": support.patch},
        )
        self._mark_unverified(meta, unverified)
        return {
            "civilization": civ,
            "stats": stats,
            "ageUpTimes": basic.payload["ageUpTimes"],
            "ratingBuckets": rating.payload,
            "patchBreakdown": patch.payload,
            "durationBuckets": duration.payload["buckets"],
            "meta": meta,
        }

    async def get_best_against(self, name: str, *, limit: int | None = None) -> dict[str, Any]:
        return await self._matchups(name, "best", limit)

    async def get_worst_against(self, name: str, *, limit: int | None = None) -> dict[str, Any]:
        return await self._matchups(name, "worst", limit)

    async def get_map_performance(self, name: str) -> dict[str, Any]:
        started = time.perf_counter()
        civ, unverified = await self._resolve(self.civs, name)
        key = shadow_key(civ)
        plan = plan_for(Shape.MAPS, CohortFilter(civ_lower=key, civ_name=civ), settings=self.settings)
        min_support = self.settings.min_support.map

        async def live() -> list[dict[str, Any]]:
            rows = await self.repo.sample_participations(plan)
            return aggregate_maps(rows, min_support=min_support, limit=self.settings.map_limit)

        snapshot_key = SNAPSHOT_KEYS["civ_maps"].format(civ=key)
        result = await self._entry_ladder("maps", plan.budget_s).run(
            read_snapshot=self._reader(snapshot_key),
            compute_live=live,
            static_fallback=fallback.empty_list,
            write_back=self._writer(snapshot_key),
        )
        meta = self._meta({"maps": result}, started, sample_sizes={"maps": plan.size}, min_support={"map": min_support})
        self._mark_unverified(meta, unverified)
        return {"civilization": civ, "maps": result.payload, "meta": meta}

    async def get_openings(self, name: str) -> dict[str, Any]:
        started = time.perf_counter()
        civ, unverified = await self._resolve(self.civs, name)
        key = shadow_key(civ)
        plan = plan_for(Shape.OPENINGS, CohortFilter(civ_lower=key, civ_name=civ), settings=self.settings)
        min_support = self.settings.min_support.opening

        async def live() -> list[dict[str, Any]]:
            rows = await self.repo.sample_participations(plan)
            return aggregate_openings(rows, min_support=min_support, limit=self.settings.opening_limit)

        snapshot_key = SNAPSHOT_KEYS["civ_openings"].format(civ=key)
        result = await self._entry_ladder("openings", plan.budget_s).run(
            read_snapshot=self._reader(snapshot_key),
            compute_live=live,
            static_fallback=fallback.empty_list,
            write_back=self._writer(snapshot_key),
        )
        meta = self._meta(
            {"openings": result},
            started,
            sample_sizes={"openings": plan.size},
            min_support={"opening": min_support},
        )
        self._mark_unverified(meta, unverified)
        return {"civilization": civ, "openings": result.payload, "meta": meta}

    async def get_filter_options(self) -> dict[str, Any]:
        """Values the summary filters accept, plus the civ and map names and the rating range."""
        started = time.perf_counter()
        budget = self.settings.budgets.filters_s

        async def live() -> dict[str, Any]:
            values = await self.repo.distinct_values(patch_limit=self.settings.filter_patch_limit, budget_s=budget)
            return aggregate_filter_options(values, map_limit=self.settings.filter_map_limit)

        snapshot_key = SNAPSHOT_KEYS["filter_options"]
        result = await self._entry_ladder("filters", budget).run(
            read_snapshot=self._reader(snapshot_key),
            compute_live=live,
            static_fallback=fallback.filter_options,
            write_back=self._writer(snapshot_key),
        )
        return {**result.payload, "meta": self._meta({"filters": result}, started, sample_sizes={}, min_support={})}

    async def get_map_summary(self, filters: SummaryFilters | None = None) -> dict[str, Any]:
        filters = filters or SummaryFilters()
        started = time.perf_counter()
        min_matches = filters.min_matches or self.settings.min_support.summary
        plan = plan_for(Shape.MAP_SUMMARY, CohortFilter(), settings=self.settings)

        async def live() -> list[dict[str, Any]]:
            return aggregate_map_summary(await self.repo.sample_matches(plan), min_matches=min_matches)

        result = await self._table_ladder("maps", plan.budget_s).run(
            read_snapshot=lambda: self.snapshots.map_summary(min_matches=min_matches),
            compute_live=live,
            static_fallback=fallback.empty_list,
        )
        meta = self._meta(
            {"maps": result},
            started,
            sample_sizes={"mapSummary": plan.size},
            min_support={"summary": min_matches},
        )
        return {"maps": result.payload, "meta": meta}

    async def get_map_detail(self, name: str) -> dict[str, Any]:
        started = time.perf_counter()
        map_name, unverified = await self._resolve(self.maps, name)
        key = shadow_key(map_name)
        plan = plan_for(Shape.MAP_DETAIL, CohortFilter(map_lower=key, map_name=map_name), settings=self.settings)
        support = self.settings.min_support

        async def live() -> dict[str, Any]:
            matches = await self.repo.sample_matches(plan)
            game_ids = [m["game_id"] for m in matches]
            players = await self.repo.participations_in_games(game_ids, budget_s=plan.budget_s)
            detail = aggregate_map_detail(
                matches,
                players,
                min_support=support.bucket,
                civ_min_support=support.map,
                limit=self.settings.summary_limit,
            )
            return detail.to_json()

        snapshot_key = SNAPSHOT_KEYS["map_detail"].format(map=key)
        # Two sequential queries: the sample, then its participants.
        result = await self._entry_ladder("map", plan.budget_s * 2).run(
            read_snapshot=self._reader(snapshot_key),
            compute_live=live,
            static_fallback=fallback.map_detail,
            write_back=self._writer(snapshot_key),
        )
        meta = self._meta(
            {"map": result},
            started,
            sample_sizes={"mapDetail": plan.size},
            min_support={"bucket": support.bucket, "civilization": support.map},
        )
        self._mark_unverified(meta, unverified)
        return {"map": map_name, **result.payload, "meta": meta}

    # ────────────────────────────────────────────────────────────────
    #  INTERNALS
    # ────────────────────────────────────────────────────────────────

    async def _matchups(self, name: str, side: str, limit: int | None) -> dict[str, Any]:
        started = time.perf_counter()
        civ, unverified = await self._resolve(self.civs, name)
        key = shadow_key(civ)
        plan = plan_for(Shape.MATCHUPS, CohortFilter(civ_lower=key, civ_name=civ), settings=self.settings)
        min_support = self.settings.min_support.matchup
        cap = self.settings.matchup_limit

        async def live() -> dict[str, list[dict[str, Any]]]:
            sampled = await self.repo.sample_participations(plan)
            game_ids = list(dict.fromkeys(r["game_id"] for r in sampled))
            rows = await self.repo.participations_in_games(game_ids, budget_s=plan.budget_s)
            edges = build_matchup_edges(civ, rows).values()
            return {
                "best": [e.to_json() for e in best_against(edges, min_support=min_support, limit=cap)],
                "worst": [e.to_json() for e in worst_against(edges, min_support=min_support, limit=cap)],
            }

        snapshot_key = SNAPSHOT_KEYS["civ_matchups"].format(civ=key)
        result = await self._entry_ladder("matchups", plan.budget_s * 2).run(
            read_snapshot=self._reader(snapshot_key),
            compute_live=live,
            static_fallback=lambda: {"best": [], "worst": []},
            write_back=self._writer(snapshot_key),
        )
        meta = self._meta(
            {"matchups": result},
            started,
            sample_sizes={"matchupGames": plan.size},
            min_support={"matchup": min_support},
        )
        self._mark_unverified(meta, unverified)
        return {"civilization": civ, "opponents": result.payload[side][: limit or cap], "meta": meta}

    async def _resolve(self, resolver: IdentityResolver, name: str) -> tuple[str, bool]:
        """Resolved name, plus whether it is an unverified best guess after a lookup timeout."""
        budget = self.settings.budgets.resolve_s
        try:
            async with asyncio.timeout(budget):
                return await resolver.resolve(name), False
        except TimeoutError:
            guess = recapitalize(name)
            log.warning("Name lookup timed out; using best guess", kind=resolver.kind, name=name, guess=guess)
            return guess, True

    async def _patch_standings(self, civ_lower: str) -> dict[str, Any]:
        try:
            return await self.snapshots.patch_standings(civ_lower)
        except Exception as exc:
            log.warning("Patch standings unavailable", civ=civ_lower, err=repr(exc))
            return {}

    def _table_ladder(self, facet: str, budget_s: float) -> FallbackLadder:
        return FallbackLadder(
            facet,
            staleness_s=self.settings.table_staleness_s,
            snapshot_budget_s=self.settings.budgets.snapshot_s,
            live_budget_s=budget_s,
        )

    def _entry_ladder(self, facet: str, budget_s: float) -> FallbackLadder:
        return FallbackLadder(
            facet,
            staleness_s=self.settings.entry_staleness_s,
            snapshot_budget_s=self.settings.budgets.snapshot_s,
            live_budget_s=budget_s,
        )

    def _reader(self, key: str) -> Callable[[], Awaitable[SnapshotEntry | None]]:
        return lambda: self.snapshots.read(key)

    def _writer(self, key: str) -> Callable[[Any], None]:
        return lambda payload: self.snapshots.schedule_upsert(key, payload)

    @staticmethod
    def _mark_unverified(meta: dict[str, Any], unverified: bool) -> None:
        if unverified:
            meta["degraded"] = True
            meta["identity"] = "unverified"

    @staticmethod
    def _meta(
        facets: dict[str, LadderResult],
        started: float,
        *,
        sample_sizes: dict[str, int],
        min_support: dict[str, int],
        filters: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        sources = {r.source.value for r in facets.values()}
        meta: dict[str, Any] = {
            "source": sources.pop() if len(sources) == 1 else "mixed",
            "degraded": any(r.degraded for r in facets.values()),
            "facets": {name: r.meta() for name, r in facets.items()},
            "sampleSizes": sample_sizes,
            "minSupport": min_support,
            "generatedAt": timezone.now().isoformat(timespec="seconds"),
            "queryTimeMs": round((time.perf_counter() - started) * 1000, 1),
        }
        if filters:
            meta["filters"] = filters
        return meta


@memoize_cache
def get_stats_service() -> CivStatsService:
    return CivStatsService(
        DjangoStatsRepository(),
        get_snapshot_store(),
        civ_lookup=CivNameLookup(),
        map_lookup=MapNameLookup(),
    )
