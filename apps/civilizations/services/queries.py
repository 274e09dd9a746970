# apps/civilizations/services/queries.py
"""
Django ORM implementations of `StatsRepository` and `NameLookup`.

Every query runs inside `run_bounded`: an asyncio deadline on the awaiting
side and, on PostgreSQL, a transaction-local `statement_timeout` so the
worker thread is released when the budget runs out.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Final

import structlog
from asgiref.sync import sync_to_async
from django.db import OperationalError, connection, transaction
from django.db.models import Avg, F, Max, Min

from apps.civilizations.errors import StatsTimeout, UpstreamUnavailable
from apps.matches.models import MatchRecord, Participation
from common.iterables_utils import chunked

if TYPE_CHECKING:
    from collections.abc import Callable

    from django.db.models import QuerySet

    from .protocols import Row
    from .sampling import SamplePlan

log = structlog.get_logger(__name__).bind(component="StatsQueries")

# PostgreSQL `query_canceled`, raised when statement_timeout fires.
QUERY_CANCELED: Final[str] = "57014"
JOIN_CHUNK_SIZE: Final[int] = 900


# ────────────────────────────────────────────────────────────────────
#  BOUNDED EXECUTION
# ────────────────────────────────────────────────────────────────────


async def run_bounded[T](fn: Callable[[], T], *, budget_s: float, stage: str) -> T:
    """
    Run blocking ORM code in a worker thread under a hard time budget.

    Raises `StatsTimeout` when the budget is exceeded and
    `UpstreamUnavailable` for any other database-level failure.
    """

    def _guarded() -> T:
        try:
            with transaction.atomic():
                if connection.vendor == "postgresql":
                    with connection.cursor() as cur:
                        cur.execute(
                            "SELECT set_config('statement_timeout', %s, true)",
                            [str(int(budget_s * 1000))],
                        )
                return fn()
        finally:
            connection.close_if_unusable_or_obsolete()

    try:
        async with asyncio.timeout(budget_s):
            return await sync_to_async(_guarded, thread_sensitive=False)()
    except TimeoutError as exc:
        log.warning("Query budget exceeded", stage=stage, budget_s=budget_s)
        raise StatsTimeout(stage, budget_s) from exc
    except OperationalError as exc:
        if getattr(exc.__cause__, "sqlstate", None) == QUERY_CANCELED:
            log.warning("Statement timeout", stage=stage, budget_s=budget_s)
            raise StatsTimeout(stage, budget_s) from exc
        log.error("Database unavailable", stage=stage, err=str(exc))
        raise UpstreamUnavailable(str(exc)) from exc


# ────────────────────────────────────────────────────────────────────
#  REPOSITORY
# ────────────────────────────────────────────────────────────────────


def _participations_for(plan: SamplePlan) -> QuerySet[Participation]:
    cohort = plan.cohort
    qs = Participation.objects.all()
    if cohort.civ_lower:
        qs = qs.for_civ(cohort.civ_lower, cohort.civ_name)
    if cohort.map_lower:
        qs = qs.on_map(cohort.map_lower, cohort.map_name)
    if cohort.leaderboard:
        qs = qs.filter(game__leaderboard=cohort.leaderboard)
    if cohort.patch:
        qs = qs.filter(game__patch=cohort.patch)
    for column in plan.non_blank:
        qs = qs.exclude(**{column: ""})
    return qs


def _matches_for(plan: SamplePlan) -> QuerySet[MatchRecord]:
    cohort = plan.cohort
    qs = MatchRecord.objects.on_leaderboard(cohort.leaderboard).on_patch(cohort.patch)
    if cohort.map_lower:
        qs = qs.on_map(cohort.map_lower, cohort.map_name)
    return qs


def _distinct(qs: QuerySet, column: str) -> list[str]:
    return list(qs.exclude(**{column: ""}).order_by(column).values_list(column, flat=True).distinct())


def _join_matches(rows: list[Row], plan: SamplePlan) -> list[Row]:
    """Attach match fields to already-sampled rows, querying only their game ids."""
    fields = list(dict.fromkeys(("game_id", *plan.match_fields)))
    game_ids = list({r["game_id"] for r in rows})

    matches: dict[str, Row] = {}
    for chunk in chunked(game_ids, JOIN_CHUNK_SIZE):
        for m in MatchRecord.objects.for_game_ids(chunk).values(*fields):
            matches[m["game_id"]] = m

    joined: list[Row] = []
    for row in rows:
        match = matches.get(row["game_id"])
        if match is None:
            if not plan.keep_unmatched:
                continue
            match = dict.fromkeys(plan.match_fields)
        joined.append({**match, **row})
    return joined


class DjangoStatsRepository:
    async def sample_participations(self, plan: SamplePlan) -> list[Row]:
        def _query() -> list[Row]:
            qs = _participations_for(plan).order_by("?").values(*plan.participation_fields)
            rows = list(qs[: plan.size])
            return _join_matches(rows, plan) if plan.needs_join else rows

        rows = await run_bounded(_query, budget_s=plan.budget_s, stage=plan.shape)
        log.debug("Sampled participations", shape=plan.shape, cohort=plan.cohort.as_dict(), rows=len(rows))
        return rows

    async def sample_matches(self, plan: SamplePlan) -> list[Row]:
        def _query() -> list[Row]:
            qs = _matches_for(plan).order_by("?").values(*plan.match_fields)
            return list(qs[: plan.size])

        return await run_bounded(_query, budget_s=plan.budget_s, stage=plan.shape)

    async def participations_in_games(self, game_ids: list[str], *, budget_s: float) -> list[Row]:
        def _query() -> list[Row]:
            rows: list[Row] = []
            for chunk in chunked(game_ids, JOIN_CHUNK_SIZE):
                rows.extend(
                    Participation.objects.in_games(chunk)
                    .order_by("game_id", "pk")
                    .values("game_id", "civ", "team", "winner", "old_rating"),
                )
            return rows

        return await run_bounded(_query, budget_s=budget_s, stage="participations_in_games")

    async def distinct_values(self, *, patch_limit: int, budget_s: float) -> Row:
        def _query() -> Row:
            matches = MatchRecord.objects.order_by()
            return {
                "civs": _distinct(Participation.objects.all(), "civ"),
                "leaderboards": _distinct(matches, "leaderboard"),
                "patches": list(
                    matches.exclude(patch="")
                    .values("patch")
                    .annotate(last_seen=Max("started_timestamp"))
                    .order_by(F("last_seen").desc(nulls_last=True), "-patch")
                    .values_list("patch", flat=True)[:patch_limit],
                ),
                "maps": _distinct(matches, "map"),
                "ratings": Participation.objects.filter(old_rating__gt=0).aggregate(
                    min=Min("old_rating"),
                    max=Max("old_rating"),
                    avg=Avg("old_rating"),
                ),
            }

        return await run_bounded(_query, budget_s=budget_s, stage="distinct_values")


# ────────────────────────────────────────────────────────────────────
#  NAME LOOKUPS
# ────────────────────────────────────────────────────────────────────


class CivNameLookup:
    """Resolves civilization names against `players.civ` / `players.civ_lower`."""

    async def by_shadow_key(self, key: str) -> str | None:
        return await Participation.objects.filter(civ_lower=key).values_list("civ", flat=True).afirst()

    async def by_exact_name(self, name: str) -> str | None:
        return await Participation.objects.filter(civ=name).values_list("civ", flat=True).afirst()


class MapNameLookup:
    """Resolves map names against `matches.map` / `matches.map_lower`."""

    async def by_shadow_key(self, key: str) -> str | None:
        return await MatchRecord.objects.filter(map_lower=key).values_list("map", flat=True).afirst()

    async def by_exact_name(self, name: str) -> str | None:
        return await MatchRecord.objects.filter(map=name).values_list("map", flat=True).afirst()
