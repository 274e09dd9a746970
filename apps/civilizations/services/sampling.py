# apps/civilizations/services/sampling.py
"""
Bounded-cost sampled aggregation.

A `SamplePlan` describes one output shape: which cohort, how many random
rows, which participation and match fields, and how long the query may take.
The repository executes the plan; the `aggregate_*` functions below turn
the sampled rows into response sections and never touch the database.
"""

from __future__ import annotations

import enum
import heapq
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Final

from apps.civilizations.conf import STATS_SETTINGS, StatsEngineSettings
from common.text_utils import shadow_key

from .bucketing import (
    DURATION_SPEC,
    NO_DATA,
    RATING_SPEC,
    BucketStat,
    apply_min_support,
    categorical_histogram,
    histogram,
)
from .units import convert_durations, plausible_average

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .protocols import Row


class Shape(enum.StrEnum):
    BASIC = "basic"
    RATING = "rating"
    PATCH = "patch"
    DURATION = "duration"
    MATCHUPS = "matchups"
    MAPS = "maps"
    SUMMARY = "summary"
    MAP_SUMMARY = "map_summary"
    MAP_DETAIL = "map_detail"
    OPENINGS = "openings"


# ─── Field sets per shape ──────────────────────────────────────────────────────
# Participation fields are read from `players`; match fields are read from
# `matches` for the sampled game ids only.

_AGE_FIELDS: Final = ("feudal_age_uptime", "castle_age_uptime", "imperial_age_uptime")
_MATCH_ROW_FIELDS: Final = ("game_id", "map", "map_lower", "duration", "avg_elo", "num_players")

PARTICIPATION_FIELDS: Final[dict[Shape, tuple[str, ...]]] = {
    Shape.BASIC: ("game_id", "civ", "winner", "old_rating", *_AGE_FIELDS),
    Shape.RATING: ("game_id", "winner", "old_rating"),
    Shape.PATCH: ("game_id", "winner"),
    Shape.DURATION: ("game_id", "winner"),
    Shape.MATCHUPS: ("game_id",),
    Shape.MAPS: ("game_id", "winner"),
    Shape.SUMMARY: ("game_id", "civ", "winner", "old_rating"),
    Shape.MAP_SUMMARY: (),
    Shape.MAP_DETAIL: (),
    Shape.OPENINGS: ("game_id", "opening", "winner", "old_rating", *_AGE_FIELDS),
}

MATCH_FIELDS: Final[dict[Shape, tuple[str, ...]]] = {
    Shape.BASIC: ("duration",),
    Shape.RATING: (),
    Shape.PATCH: ("patch",),
    Shape.DURATION: ("duration",),
    Shape.MATCHUPS: (),
    Shape.MAPS: ("map",),
    Shape.SUMMARY: (),
    Shape.MAP_SUMMARY: _MATCH_ROW_FIELDS,
    Shape.MAP_DETAIL: _MATCH_ROW_FIELDS,
    Shape.OPENINGS: ("duration",),
}

# Basic totals keep participations whose match row is missing; every other
# joined shape drops them.
_KEEP_UNMATCHED: Final[frozenset[Shape]] = frozenset({Shape.BASIC})

# Participation columns that must be non-empty for a row to be sampled.
_NON_BLANK: Final[dict[Shape, tuple[str, ...]]] = {Shape.OPENINGS: ("opening",)}

_SIZE_ATTR: Final[dict[Shape, str]] = {
    Shape.BASIC: "basic",
    Shape.RATING: "rating",
    Shape.PATCH: "patch",
    Shape.DURATION: "duration",
    Shape.MATCHUPS: "matchups",
    Shape.MAPS: "maps",
    Shape.SUMMARY: "summary",
    Shape.MAP_SUMMARY: "map_summary",
    Shape.MAP_DETAIL: "maps",
    Shape.OPENINGS: "openings",
}

_BUDGET_ATTR: Final[dict[Shape, str]] = {
    Shape.BASIC: "basic_s",
    Shape.RATING: "rating_s",
    Shape.PATCH: "patch_s",
    Shape.DURATION: "duration_s",
    Shape.MATCHUPS: "matchups_s",
    Shape.MAPS: "maps_s",
    Shape.SUMMARY: "summary_s",
    Shape.MAP_SUMMARY: "summary_s",
    Shape.MAP_DETAIL: "maps_s",
    Shape.OPENINGS: "openings_s",
}


@dataclass(slots=True, frozen=True)
class CohortFilter:
    """Which population a sample is drawn from. Empty filter = the whole corpus."""

    civ_lower: str | None = None
    map_lower: str | None = None
    # Stored spellings, matched against legacy rows that have no shadow key.
    civ_name: str | None = None
    map_name: str | None = None
    leaderboard: str | None = None
    patch: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v and not k.endswith("_name")}


@dataclass(slots=True, frozen=True)
class SamplePlan:
    shape: Shape
    cohort: CohortFilter
    size: int
    participation_fields: tuple[str, ...]
    match_fields: tuple[str, ...]
    budget_s: float
    keep_unmatched: bool = False
    non_blank: tuple[str, ...] = ()

    @property
    def needs_join(self) -> bool:
        return bool(self.match_fields) and bool(self.participation_fields)


def plan_for(
    shape: Shape,
    cohort: CohortFilter,
    *,
    settings: StatsEngineSettings = STATS_SETTINGS,
) -> SamplePlan:
    return SamplePlan(
        shape=shape,
        cohort=cohort,
        size=getattr(settings.sample_sizes, _SIZE_ATTR[shape]),
        participation_fields=PARTICIPATION_FIELDS[shape],
        match_fields=MATCH_FIELDS[shape],
        budget_s=getattr(settings.budgets, _BUDGET_ATTR[shape]),
        keep_unmatched=shape in _KEEP_UNMATCHED,
        non_blank=_NON_BLANK.get(shape, ()),
    )


# ────────────────────────────────────────────────────────────────────
#  AGGREGATIONS
# ────────────────────────────────────────────────────────────────────


def _avg(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _round(value: float | None, ndigits: int = 1) -> float | None:
    return round(value, ndigits) if value is not None else None


def _win_rate(wins: int, games: int) -> float | None:
    return round(wins / games, 4) if games else NO_DATA


def _age_up_times(rows: Sequence[Row]) -> dict[str, float | None]:
    age_up: dict[str, float | None] = {}
    for age_field in _AGE_FIELDS:
        times = [r[age_field] for r in rows if r.get(age_field) and r[age_field] > 0]
        age_up[age_field.split("_", 1)[0]] = _round(_avg(times), 0)
    return age_up


def aggregate_basic(rows: Sequence[Row]) -> dict[str, Any]:
    """Totals, average rating/duration and average age-up times (seconds)."""
    total = len(rows)
    wins = sum(1 for r in rows if r.get("winner"))
    ratings = [r["old_rating"] for r in rows if r.get("old_rating") is not None]
    minutes = convert_durations((r.get("duration") for r in rows), context="basic")

    return {
        "stats": {
            "totalPicks": total,
            "wins": wins,
            "losses": total - wins,
            "winRate": _win_rate(wins, total),
            "avgRating": _round(_avg(ratings)),
            "avgDurationMinutes": plausible_average(minutes),
        },
        "ageUpTimes": _age_up_times(rows),
    }


def aggregate_rating(rows: Sequence[Row], *, min_support: int) -> list[BucketStat]:
    buckets = histogram(((r.get("old_rating"), r.get("winner")) for r in rows), RATING_SPEC)
    return apply_min_support(buckets, min_support)


def aggregate_duration(rows: Sequence[Row], *, min_support: int) -> list[BucketStat]:
    minutes = convert_durations((r.get("duration") for r in rows), context="duration")
    # 0 = unreadable duration; not part of the cohort.
    observations = ((m or None, r.get("winner")) for m, r in zip(minutes, rows, strict=True))
    return apply_min_support(histogram(observations, DURATION_SPEC), min_support)


def aggregate_patch(
    rows: Sequence[Row],
    *,
    min_support: int,
    limit: int,
    standings: dict[str, Row] | None = None,
) -> list[BucketStat]:
    """
    Latest patches first, each with its real per-patch rank and play rate
    when the patch snapshot table has them.
    """
    buckets = apply_min_support(
        categorical_histogram((r.get("patch"), r.get("winner")) for r in rows),
        min_support,
    )[:limit]

    standings = standings or {}
    for b in buckets:
        s = standings.get(b.label, {})
        b.extra = {
            "patch": b.label,
            "rank": s.get("rank"),
            "totalCivs": s.get("totalCivs"),
            "playRate": s.get("playRate"),
        }
    return buckets


def aggregate_maps(rows: Sequence[Row], *, min_support: int, limit: int) -> list[dict[str, Any]]:
    """Per-map results; one observation per game even if the civ appears twice in it."""
    games: dict[str, int] = defaultdict(int)
    wins: dict[str, int] = defaultdict(int)
    names: dict[str, str] = {}
    seen: set[tuple[str, str]] = set()

    for r in rows:
        name = r.get("map") or ""
        key = shadow_key(name)
        if not key or (r["game_id"], key) in seen:
            continue
        seen.add((r["game_id"], key))
        names.setdefault(key, name)
        games[key] += 1
        wins[key] += bool(r.get("winner"))

    pool = [k for k in games if games[k] >= min_support]
    top = heapq.nlargest(limit, pool, key=lambda k: (_win_rate(wins[k], games[k]), games[k]))
    return [
        {"map": names[k], "games": games[k], "wins": wins[k], "winRate": _win_rate(wins[k], games[k])}
        for k in top
    ]


def aggregate_summary(rows: Sequence[Row], *, min_matches: int, limit: int) -> list[dict[str, Any]]:
    """Per-civ leaderboard over a corpus sample; play rate is the civ's share of the sample."""
    picks: dict[str, int] = defaultdict(int)
    wins: dict[str, int] = defaultdict(int)
    ratings: dict[str, list[float]] = defaultdict(list)
    names: dict[str, str] = {}

    for r in rows:
        key = shadow_key(r.get("civ"))
        if not key:
            continue
        names.setdefault(key, r["civ"])
        picks[key] += 1
        wins[key] += bool(r.get("winner"))
        if r.get("old_rating") is not None:
            ratings[key].append(r["old_rating"])

    total = sum(picks.values())
    items = [
        {
            "name": names[k],
            "winRate": _win_rate(wins[k], picks[k]),
            "totalMatches": picks[k],
            "avgRating": _round(_avg(ratings[k])),
            "playRate": _win_rate(picks[k], total),
        }
        for k in picks
        if picks[k] >= min_matches
    ]
    items.sort(key=lambda c: (c["winRate"], c["totalMatches"]), reverse=True)
    return items[:limit]


def _map_stats(match_rows: Sequence[Row]) -> dict[str, Any]:
    minutes = convert_durations((r.get("duration") for r in match_rows), context="map")
    ratings = [r["avg_elo"] for r in match_rows if r.get("avg_elo")]
    players = [r["num_players"] for r in match_rows if r.get("num_players")]
    return {
        "totalMatches": len(match_rows),
        "avgDurationMinutes": plausible_average(minutes),
        "avgRating": _round(_avg(ratings)),
        "avgPlayers": _round(_avg(players), 2),
    }


def aggregate_map_summary(match_rows: Sequence[Row], *, min_matches: int) -> list[dict[str, Any]]:
    groups: dict[str, list[Row]] = defaultdict(list)
    names: dict[str, str] = {}
    for r in match_rows:
        key = r.get("map_lower") or shadow_key(r.get("map"))
        if not key:
            continue
        names.setdefault(key, r.get("map") or key)
        groups[key].append(r)

    total = sum(len(g) for g in groups.values())
    items = [
        {"name": names[k], **_map_stats(g), "playRate": _win_rate(len(g), total)}
        for k, g in groups.items()
        if len(g) >= min_matches
    ]
    items.sort(key=lambda m: m["totalMatches"], reverse=True)
    return items


@dataclass(slots=True)
class MapDetail:
    stats: dict[str, Any]
    duration_buckets: list[BucketStat] = field(default_factory=list)
    civilizations: list[dict[str, Any]] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        # Match rows carry no winner, so only the distribution is reported.
        return {
            "stats": self.stats,
            "durationBuckets": [
                {"label": b.label, "count": b.count, "shareOfCohort": b.share_of_cohort}
                for b in self.duration_buckets
            ],
            "civilizations": self.civilizations,
        }


def aggregate_map_detail(
    match_rows: Sequence[Row],
    participation_rows: Sequence[Row],
    *,
    min_support: int,
    civ_min_support: int,
    limit: int,
) -> MapDetail:
    """Stats for one map plus the civs that perform best on it."""
    minutes = convert_durations((r.get("duration") for r in match_rows), context="map_detail")
    duration_buckets = apply_min_support(
        histogram(((m or None, False) for m in minutes), DURATION_SPEC),
        min_support,
    )

    civs = aggregate_summary(participation_rows, min_matches=civ_min_support, limit=limit)
    return MapDetail(
        stats=_map_stats(match_rows),
        duration_buckets=duration_buckets,
        civilizations=[{"name": c["name"], "games": c["totalMatches"], "winRate": c["winRate"]} for c in civs],
    )


def aggregate_openings(rows: Sequence[Row], *, min_support: int, limit: int) -> list[dict[str, Any]]:
    """
    Results per opening strategy, most played first.

    `shareOfCohort` is relative to every sampled row that recorded an
    opening; strategies seen fewer than `min_support` times are dropped.
    """
    groups: dict[str, list[Row]] = defaultdict(list)
    for r in rows:
        opening = (r.get("opening") or "").strip()
        if opening:
            groups[opening].append(r)

    total = sum(len(g) for g in groups.values())
    items: list[dict[str, Any]] = []
    for opening, group in groups.items():
        games = len(group)
        if games < min_support:
            continue
        wins = sum(1 for r in group if r.get("winner"))
        ratings = [r["old_rating"] for r in group if r.get("old_rating") is not None]
        minutes = convert_durations((r.get("duration") for r in group), context="openings")
        items.append(
            {
                "opening": opening,
                "games": games,
                "wins": wins,
                "winRate": _win_rate(wins, games),
                "shareOfCohort": _win_rate(games, total),
                "avgRating": _round(_avg(ratings)),
                "avgDurationMinutes": plausible_average(minutes),
                "ageUpTimes": _age_up_times(group),
            },
        )
    items.sort(key=lambda o: (o["games"], o["winRate"]), reverse=True)
    return items[:limit]


def _unique_names(names: Iterable[str | None]) -> list[str]:
    """One spelling per shadow key (capitalised preferred), sorted case-insensitively."""
    chosen: dict[str, str] = {}
    for name in sorted(n.strip() for n in names if n and n.strip()):
        chosen.setdefault(shadow_key(name), name)
    return sorted(chosen.values(), key=str.lower)


def aggregate_filter_options(values: Row, *, map_limit: int) -> dict[str, Any]:
    """Turn the repository's distinct column values into the filter-options payload."""
    ratings = values.get("ratings") or {}
    rating_range = None
    if ratings.get("min") is not None:
        rating_range = {k: round(ratings[k]) for k in ("min", "max", "avg")}

    return {
        "civilizations": _unique_names(values.get("civs", ())),
        "leaderboards": sorted({lb for lb in values.get("leaderboards", ()) if lb}),
        # Already most-recent first.
        "patches": list(dict.fromkeys(p for p in values.get("patches", ()) if p)),
        "maps": _unique_names(values.get("maps", ()))[:map_limit],
        "ratingRange": rating_range,
    }
