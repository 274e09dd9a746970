# apps/civilizations/services/fallback.py
"""
Last-rung payloads served when neither a snapshot nor live data is available.

Placeholders keep the response shape intact but carry no invented
statistics: every bucket is present with zero counts and a NO_DATA win rate.
Age-up times fall back to typical values so timelines still render.
"""

from __future__ import annotations

from typing import Any, Final

from .bucketing import DURATION_SPEC, NO_DATA, RATING_SPEC, BucketSpec, BucketStat

# Typical age-up times in seconds.
DEFAULT_AGE_UP_TIMES: Final[dict[str, int]] = {"feudal": 660, "castle": 960, "imperial": 1380}


def _empty_buckets(spec: BucketSpec) -> list[dict[str, Any]]:
    return [{**BucketStat(label).to_json(), "placeholder": True} for label in spec.all_labels]


def basic() -> dict[str, Any]:
    return {
        "stats": {
            "totalPicks": 0,
            "wins": 0,
            "losses": 0,
            "winRate": NO_DATA,
            "avgRating": None,
            "avgDurationMinutes": None,
        },
        "ageUpTimes": dict(DEFAULT_AGE_UP_TIMES),
    }


def rating_buckets() -> list[dict[str, Any]]:
    return _empty_buckets(RATING_SPEC)


def duration_buckets() -> list[dict[str, Any]]:
    return _empty_buckets(DURATION_SPEC)


def empty_list() -> list[Any]:
    return []


def map_stats() -> dict[str, Any]:
    return {"totalMatches": 0, "avgDurationMinutes": None, "avgRating": None, "avgPlayers": None}


def map_detail() -> dict[str, Any]:
    return {"stats": map_stats(), "durationBuckets": [], "civilizations": []}


def filter_options() -> dict[str, Any]:
    return {"civilizations": [], "leaderboards": [], "patches": [], "maps": [], "ratingRange": None}
