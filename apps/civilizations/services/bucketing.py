# apps/civilizations/services/bucketing.py
"""
Fixed, labelled histograms over continuous (rating, duration) and discrete
(patch) dimensions.

Buckets are half-open `[lo, hi)`. Anything under the first edge goes to the
`BucketSpec.below_label` bucket and anything at or over the last edge to the
`above_label` bucket, so every observed value is counted exactly once.
"""

from __future__ import annotations

import bisect
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from apps.civilizations.conf import (
    DURATION_ABOVE_LABEL,
    DURATION_BELOW_LABEL,
    DURATION_EDGES,
    DURATION_LABELS,
    RATING_ABOVE_LABEL,
    RATING_BELOW_LABEL,
    RATING_EDGES,
    RATING_LABELS,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Iterable

# Empty-bucket win rate. Serialised as JSON null, never as 0 or 0.5.
NO_DATA: Final[None] = None

type Observation = tuple[Any, bool]


@dataclass(slots=True, frozen=True)
class BucketSpec:
    edges: tuple[float, ...]
    labels: tuple[str, ...]
    below_label: str
    above_label: str

    def __post_init__(self) -> None:
        if len(self.edges) < 2:
            raise ValueError("BucketSpec needs at least two edges")
        if any(lo >= hi for lo, hi in zip(self.edges, self.edges[1:], strict=False)):
            raise ValueError("BucketSpec edges must be strictly increasing")
        if len(self.labels) != len(self.edges) - 1:
            raise ValueError("BucketSpec needs exactly one label per [lo, hi) range")

    @property
    def all_labels(self) -> tuple[str, ...]:
        return (self.below_label, *self.labels, self.above_label)

    def assign(self, value: float) -> str:
        idx = bisect.bisect_right(self.edges, value)
        if idx == 0:
            return self.below_label
        if idx == len(self.edges):
            return self.above_label
        return self.labels[idx - 1]


RATING_SPEC: Final = BucketSpec(RATING_EDGES, RATING_LABELS, RATING_BELOW_LABEL, RATING_ABOVE_LABEL)
DURATION_SPEC: Final = BucketSpec(DURATION_EDGES, DURATION_LABELS, DURATION_BELOW_LABEL, DURATION_ABOVE_LABEL)


@dataclass(slots=True)
class BucketStat:
    label: str
    count: int = 0
    win_count: int = 0
    share_of_cohort: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def win_rate(self) -> float | None:
        if self.count == 0:
            return NO_DATA
        return round(self.win_count / self.count, 4)

    def to_json(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "count": self.count,
            "winCount": self.win_count,
            "winRate": self.win_rate,
            "shareOfCohort": self.share_of_cohort,
            **self.extra,
        }


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _fill_shares(buckets: list[BucketStat], total: int) -> list[BucketStat]:
    for b in buckets:
        b.share_of_cohort = round(b.count / total, 4) if total else 0.0
    return buckets


def histogram(observations: Iterable[Observation], spec: BucketSpec) -> list[BucketStat]:
    """
    Count `(value, won)` observations into `spec`'s buckets.

    Every bucket is returned (in spec order) even when empty; use
    `apply_min_support` to drop sparse ones. Null/NaN values are not
    part of the cohort.
    """
    buckets = {label: BucketStat(label) for label in spec.all_labels}
    total = 0
    for value, won in observations:
        if _is_missing(value):
            continue
        b = buckets[spec.assign(value)]
        b.count += 1
        b.win_count += bool(won)
        total += 1
    return _fill_shares(list(buckets.values()), total)


_NUMERIC_PARTS = re.compile(r"\d+")


def patch_sort_key(patch: Any) -> tuple[int, ...]:
    """Order patch identifiers numerically ('101129', '25.01', 'v1.4.2')."""
    return tuple(int(p) for p in _NUMERIC_PARTS.findall(str(patch)))


def categorical_histogram(
    observations: Iterable[tuple[Hashable, bool]],
    *,
    sort_key: Callable[[Any], Any] = patch_sort_key,
    newest_first: bool = True,
    limit: int | None = None,
) -> list[BucketStat]:
    """
    Per-category counts for a discrete dimension (patch).

    `shareOfCohort` is taken over the whole cohort, so truncating with
    `limit` does not renormalise the remaining shares.
    """
    counts: Counter[Hashable] = Counter()
    wins: Counter[Hashable] = Counter()
    total = 0
    for key, won in observations:
        if _is_missing(key) or key == "":
            continue
        counts[key] += 1
        wins[key] += bool(won)
        total += 1

    ordered = sorted(counts, key=sort_key, reverse=newest_first)
    if limit is not None:
        ordered = ordered[:limit]
    buckets = [BucketStat(str(k), count=counts[k], win_count=wins[k]) for k in ordered]
    return _fill_shares(buckets, total)


def apply_min_support(buckets: Iterable[BucketStat], threshold: int) -> list[BucketStat]:
    return [b for b in buckets if b.count >= threshold]
