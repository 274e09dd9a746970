# apps/civilizations/management/commands/refresh_civ_snapshots.py
# ================================================================================
"""
Django management command to rebuild the civilization, map and per-patch
snapshot tables from the raw `players` / `matches` data.

Snapshots are the first rung of the fallback ladder: endpoints read them
before sampling live data, and fall back to them when live sampling fails.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Avg, Case, CharField, Count, F, FloatField, Max, Q, Value, When
from django.db.models.functions import Lower, Trim
from django.utils import timezone

from apps.civilizations.conf import PLAUSIBLE_MINUTES_MAX, PLAUSIBLE_MINUTES_MIN, STATS_SETTINGS
from apps.civilizations.models import CivPatchSnapshot, CivStatsSnapshot, MapStatsSnapshot, StatsSnapshot
from apps.civilizations.services.units import MINUTES_DIVISOR, UNIT_THRESHOLDS, DurationUnit
from apps.matches.models import MatchRecord, Participation
from common.cache_utils import delete_pattern

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from django.db.models import Expression

RESPONSE_CACHE_PATTERN = "*/api/v1/*"


# ─── Helpers ───────────────────────────────────────────────────────────────────


def _duration_minutes_expression() -> Expression:
    """
    ORM twin of `units.to_minutes`: picks the divisor from the magnitude of
    `duration`. Non-positive and NULL durations map to NULL so `Avg` skips them.
    """
    whens = [
        When(duration__gt=threshold, then=F("duration") / Value(MINUTES_DIVISOR[unit]))
        for threshold, unit in UNIT_THRESHOLDS
    ]
    whens.append(When(duration__gt=0, then=F("duration") / Value(MINUTES_DIVISOR[DurationUnit.MINUTES])))
    return Case(*whens, default=None, output_field=FloatField())


def _shadow_key_expression(shadow: str, name: str) -> Expression:
    """`shadow`, or `lower(trim(name))` for rows saved before the column was filled."""
    return Case(
        When(**{shadow: ""}, then=Lower(Trim(name))),
        default=F(shadow),
        output_field=CharField(),
    )


def _positive(field: str) -> Q:
    return Q(**{f"{field}__gt": 0})


def rank_patch_rows(rows: Iterable[dict[str, Any]], min_games: int) -> list[dict[str, Any]]:
    """
    Attach `rank`, `total_civs` and `play_rate` to per-(patch, civ) rows.

    Rank is 1-based by win rate (ties broken by games, then name) among civs
    with at least `min_games` on that patch; the rest keep `rank=None`.
    `play_rate` is the civ's share of all picks on the patch.
    """
    by_patch: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        by_patch[row["patch"]].append(dict(row))

    ranked: list[dict[str, Any]] = []
    for patch_rows in by_patch.values():
        picks = sum(r["games"] for r in patch_rows)
        for r in patch_rows:
            r["win_rate"] = r["wins"] / r["games"] if r["games"] else 0.0
            r["play_rate"] = r["games"] / picks if picks else 0.0
            r["rank"] = None

        eligible = sorted(
            (r for r in patch_rows if r["games"] >= min_games),
            key=lambda r: (-r["win_rate"], -r["games"], r["civ_lower"]),
        )
        for position, r in enumerate(eligible, start=1):
            r["rank"] = position
        for r in patch_rows:
            r["total_civs"] = len(eligible)
        ranked.extend(patch_rows)
    return ranked


# ─── Data Refresh Logic ───────────────────────────────────────────────────────


def refresh_civ_stats(now: datetime) -> int:
    """Rebuilds `civ_stats_snapshot` with one row per civilization."""
    rows = list(
        Participation.objects.annotate(key=_shadow_key_expression("civ_lower", "civ"))
        .exclude(key="")
        .values("key")
        .annotate(
            display=Max("civ"),
            total=Count("id"),
            wins=Count("id", filter=Q(winner=True)),
            avg_rating=Avg("old_rating", filter=_positive("old_rating")),
            avg_feudal=Avg("feudal_age_uptime", filter=_positive("feudal_age_uptime")),
            avg_castle=Avg("castle_age_uptime", filter=_positive("castle_age_uptime")),
            avg_imperial=Avg("imperial_age_uptime", filter=_positive("imperial_age_uptime")),
        )
        .order_by("key"),
    )
    all_picks = sum(r["total"] for r in rows)

    batch = [
        CivStatsSnapshot(
            civ=r["display"],
            civ_lower=r["key"],
            total_picks=r["total"],
            wins=r["wins"],
            losses=r["total"] - r["wins"],
            win_rate=r["wins"] / r["total"] if r["total"] else 0.0,
            pick_rate=r["total"] / all_picks if all_picks else 0.0,
            avg_rating=r["avg_rating"],
            avg_feudal_s=r["avg_feudal"],
            avg_castle_s=r["avg_castle"],
            avg_imperial_s=r["avg_imperial"],
            refreshed_at=now,
        )
        for r in rows
    ]
    CivStatsSnapshot.objects.all().delete()
    CivStatsSnapshot.objects.bulk_create(batch, batch_size=2000)
    return len(batch)


def refresh_map_stats(now: datetime) -> int:
    """Rebuilds `map_stats_snapshot`; average duration covers realistic game lengths only."""
    plausible = Q(minutes__gte=PLAUSIBLE_MINUTES_MIN, minutes__lte=PLAUSIBLE_MINUTES_MAX)
    rows = list(
        MatchRecord.objects.annotate(key=_shadow_key_expression("map_lower", "map"))
        .exclude(key="")
        .annotate(minutes=_duration_minutes_expression())
        .values("key")
        .annotate(
            display=Max("map"),
            total=Count("game_id"),
            avg_minutes=Avg("minutes", filter=plausible),
            avg_rating=Avg("avg_elo", filter=_positive("avg_elo")),
            avg_players=Avg("num_players", filter=_positive("num_players")),
        )
        .order_by("key"),
    )
    all_matches = sum(r["total"] for r in rows)

    batch = [
        MapStatsSnapshot(
            map=r["display"],
            map_lower=r["key"],
            total_matches=r["total"],
            play_rate=r["total"] / all_matches if all_matches else 0.0,
            avg_duration_minutes=r["avg_minutes"],
            avg_rating=r["avg_rating"],
            avg_players=r["avg_players"],
            refreshed_at=now,
        )
        for r in rows
    ]
    MapStatsSnapshot.objects.all().delete()
    MapStatsSnapshot.objects.bulk_create(batch, batch_size=2000)
    return len(batch)


def refresh_civ_patch_stats(now: datetime) -> int:
    """Upserts per-(civ, patch) standings and drops pairs no longer present."""
    rows = (
        Participation.objects.annotate(key=_shadow_key_expression("civ_lower", "civ"))
        .exclude(key="")
        .exclude(game__patch="")
        .values("key", patch=F("game__patch"))
        .annotate(
            display=Max("civ"),
            games=Count("id"),
            wins=Count("id", filter=Q(winner=True)),
        )
        .order_by()
    )
    ranked = rank_patch_rows(
        ({**r, "civ_lower": r["key"]} for r in rows.iterator()),
        STATS_SETTINGS.min_support.patch,
    )

    batch = [
        CivPatchSnapshot(
            civ=r["display"],
            civ_lower=r["civ_lower"],
            patch=r["patch"],
            games=r["games"],
            wins=r["wins"],
            win_rate=r["win_rate"],
            rank=r["rank"],
            total_civs=r["total_civs"],
            play_rate=r["play_rate"],
            refreshed_at=now,
        )
        for r in ranked
    ]
    if batch:
        CivPatchSnapshot.objects.bulk_create(
            batch,
            batch_size=2000,
            update_conflicts=True,
            update_fields=["civ", "games", "wins", "win_rate", "rank", "total_civs", "play_rate", "refreshed_at"],
            unique_fields=["civ_lower", "patch"],
        )
    CivPatchSnapshot.objects.filter(refreshed_at__lt=now).delete()
    return len(batch)


# ─── Command Wrapper ──────────────────────────────────────────────────────────


class Command(BaseCommand):
    """
    Management command to rebuild the snapshot tables the stats endpoints fall back on.
    """

    help = "Rebuilds civilization, map and per-patch snapshots from match data."

    def add_arguments(self, parser):
        parser.add_argument(
            "--clear-entries",
            action="store_true",
            help="Also drop every written-back facet snapshot and the cached API responses.",
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS("► Starting snapshot refresh..."))
        now = timezone.now()

        with transaction.atomic():
            civs = refresh_civ_stats(now)
            maps = refresh_map_stats(now)
            patches = refresh_civ_patch_stats(now)
            if options["clear_entries"]:
                dropped, _ = StatsSnapshot.objects.all().delete()
                self.stdout.write(f"  dropped {dropped} facet snapshots")

        self.stdout.write(f"  {civs} civilizations, {maps} maps, {patches} civ/patch pairs")

        if options["clear_entries"]:
            cleared = delete_pattern(RESPONSE_CACHE_PATTERN)
            self.stdout.write(f"  cleared {cleared} cached responses")

        self.stdout.write(self.style.SUCCESS("✓ Snapshot refresh completed successfully."))
