# apps/civilizations/services/protocols.py
# ================================================================================
"""
Structural contracts between the statistics engine and its storage.

The engine only talks to these shapes. The Django implementations live in
`queries.py` and `snapshots.py`; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from datetime import datetime

    from .sampling import SamplePlan

type Row = dict[str, Any]


@dataclass(slots=True, frozen=True)
class SnapshotEntry:
    """A stored payload and when it was computed."""

    payload: Any
    refreshed_at: datetime

    def age_s(self, now: datetime) -> float:
        return (now - self.refreshed_at).total_seconds()

    def is_stale(self, window_s: float, now: datetime) -> bool:
        return self.age_s(now) > window_s


class NameLookup(Protocol):
    """Finds the stored spelling of a civilization or map name."""

    async def by_shadow_key(self, key: str) -> str | None:
        """Match against the lower-cased shadow column."""
        ...

    async def by_exact_name(self, name: str) -> str | None:
        """Match the name exactly as stored (for rows without a shadow key)."""
        ...


class StatsRepository(Protocol):
    """
    Bounded, sampled reads of match data.

    Every method enforces the plan's (or the given) time budget and raises
    `StatsTimeout` when it is exceeded; nothing is ever silently truncated.
    """

    async def sample_participations(self, plan: SamplePlan) -> list[Row]:
        """Random capped sample of the cohort, joined to its matches when the plan asks for match fields."""
        ...

    async def sample_matches(self, plan: SamplePlan) -> list[Row]:
        """Random capped sample of match-level rows."""
        ...

    async def participations_in_games(self, game_ids: list[str], *, budget_s: float) -> list[Row]:
        """Every participation row belonging to the given games."""
        ...

    async def distinct_values(self, *, patch_limit: int, budget_s: float) -> Row:
        """
        `{civs, leaderboards, maps, patches, ratings}`: distinct non-empty
        column values, the `patch_limit` most recently played patches first,
        and `{min, max, avg}` of positive ratings.
        """
        ...


class SnapshotStore(Protocol):
    """Read-mostly access to precomputed snapshots."""

    async def read(self, key: str) -> SnapshotEntry | None: ...

    def schedule_upsert(self, key: str, payload: Any) -> None:
        """Fire-and-forget write; must never raise into the caller."""
        ...

    async def civ_totals(self, civ_lower: str) -> SnapshotEntry | None: ...

    async def civ_summary(self, *, min_matches: int) -> SnapshotEntry | None: ...

    async def map_summary(self, *, min_matches: int) -> SnapshotEntry | None: ...

    async def patch_standings(self, civ_lower: str) -> dict[str, Row]:
        """`{patch: {rank, totalCivs, playRate}}` for one civilization."""
        ...
