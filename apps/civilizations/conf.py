"""Configuration, constants, and tunables for the 'civilizations' statistics engine."""

from __future__ import annotations

from typing import Final

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Realistic game length (minutes) ───────────────────────────────────────────
# Used to sanity-check inferred duration units; values outside are logged, not rejected.
PLAUSIBLE_MINUTES_MIN: Final[float] = 5.0
PLAUSIBLE_MINUTES_MAX: Final[float] = 120.0

# ─── Bucket definitions ────────────────────────────────────────────────────────
# Edges are half-open [lo, hi); values outside the first/last edge land in the
# designated below/above buckets.
RATING_EDGES: Final[tuple[float, ...]] = (850, 1000, 1200, 1600, 1900)
RATING_LABELS: Final[tuple[str, ...]] = ("850-1000", "1000-1200", "1200-1600", "1600-1900")
RATING_BELOW_LABEL: Final[str] = "<850"
RATING_ABOVE_LABEL: Final[str] = "1900+"

DURATION_EDGES: Final[tuple[float, ...]] = (15, 25, 35, 45, 60)
DURATION_LABELS: Final[tuple[str, ...]] = ("15-25min", "25-35min", "35-45min", "45-60min")
DURATION_BELOW_LABEL: Final[str] = "<15min"
DURATION_ABOVE_LABEL: Final[str] = ">60min"

# ─── Snapshot keys ─────────────────────────────────────────────────────────────
SNAPSHOT_KEYS: Final[dict[str, str]] = {
    "civ_rating": "civ:{civ}:rating",
    "civ_patch": "civ:{civ}:patch",
    "civ_duration": "civ:{civ}:duration",
    "civ_matchups": "civ:{civ}:matchups",
    "civ_maps": "civ:{civ}:maps",
    "civ_openings": "civ:{civ}:openings",
    "filter_options": "filters:options",
    "map_detail": "map:{map}:detail",
}

# ─── Response-cache TTLs (seconds) ─────────────────────────────────────────────
TIMEOUTS: Final[dict[str, int]] = {
    "civ_summary": 60 * 30,
    "civ_detail": 60 * 30,
    "civ_matchups": 60 * 30,
    "civ_maps": 60 * 30,
    "civ_openings": 60 * 30,
    "civ_filters": 60 * 60,
    "map_summary": 60 * 15,
    "map_detail": 60 * 15,
}


# ─── Tunables ──────────────────────────────────────────────────────────────────


class SampleSizes(BaseModel):
    """Random-sample caps per output shape."""

    basic: int = Field(default=2500, ge=100)
    rating: int = Field(default=5000, ge=100)
    patch: int = Field(default=8000, ge=100)
    duration: int = Field(default=8000, ge=100)
    matchups: int = Field(default=1200, ge=100)
    maps: int = Field(default=2000, ge=100)
    summary: int = Field(default=20000, ge=1000)
    map_summary: int = Field(default=20000, ge=1000)
    openings: int = Field(default=5000, ge=100)

    model_config = ConfigDict(frozen=True)


class MinSupport(BaseModel):
    """Smallest observation count a reported statistic needs."""

    bucket: int = Field(default=4, ge=1)
    patch: int = Field(default=5, ge=1)
    matchup: int = Field(default=4, ge=1)
    map: int = Field(default=3, ge=1)
    summary: int = Field(default=10, ge=1)
    opening: int = Field(default=10, ge=1)

    model_config = ConfigDict(frozen=True)


class StageBudgets(BaseModel):
    """Per-stage time budgets in seconds."""

    resolve_s: float = Field(default=1.5, gt=0)
    snapshot_s: float = Field(default=1.0, gt=0)
    basic_s: float = Field(default=5.0, gt=0)
    rating_s: float = Field(default=5.0, gt=0)
    patch_s: float = Field(default=6.0, gt=0)
    duration_s: float = Field(default=4.0, gt=0)
    matchups_s: float = Field(default=4.0, gt=0)
    maps_s: float = Field(default=3.0, gt=0)
    summary_s: float = Field(default=8.0, gt=0)
    openings_s: float = Field(default=4.0, gt=0)
    filters_s: float = Field(default=5.0, gt=0)

    model_config = ConfigDict(frozen=True)


class StatsEngineSettings(BaseSettings):
    sample_sizes: SampleSizes = SampleSizes()
    min_support: MinSupport = MinSupport()
    budgets: StageBudgets = StageBudgets()

    # Snapshot staleness windows
    table_staleness_s: int = Field(default=60 * 60 * 24, ge=60)
    entry_staleness_s: int = Field(default=60 * 60 * 6, ge=60)

    # Output caps
    matchup_limit: int = Field(default=15, ge=1, le=50)
    map_limit: int = Field(default=12, ge=1, le=50)
    patch_limit: int = Field(default=8, ge=1, le=30)
    summary_limit: int = Field(default=50, ge=1, le=100)
    opening_limit: int = Field(default=20, ge=1, le=100)
    filter_patch_limit: int = Field(default=10, ge=1, le=50)
    filter_map_limit: int = Field(default=50, ge=1, le=200)

    model_config = SettingsConfigDict(
        env_prefix="CIVSTATS_",
        env_nested_delimiter="__",
        frozen=True,
    )


STATS_SETTINGS = StatsEngineSettings()
