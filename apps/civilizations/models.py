# apps/civilizations/models.py
# ================================================================================
"""Precomputed snapshots served ahead of live sampled aggregation."""

from __future__ import annotations

from django.db import models


class CivStatsSnapshot(models.Model):
    """
    Corpus-wide totals for one civilization.

    Rebuilt in full by `refresh_civ_snapshots`; read by the civilization
    summary and as the snapshot rung for the detail `stats` facet.
    """

    civ = models.CharField(max_length=64, unique=True)
    civ_lower = models.CharField(max_length=64, unique=True)
    total_picks = models.PositiveIntegerField(default=0)
    wins = models.PositiveIntegerField(default=0)
    losses = models.PositiveIntegerField(default=0)
    win_rate = models.FloatField(default=0.0, help_text="Fraction 0–1.")
    pick_rate = models.FloatField(default=0.0, help_text="Share of all participations, 0–1.")
    avg_rating = models.FloatField(null=True, blank=True)
    avg_feudal_s = models.FloatField(null=True, blank=True)
    avg_castle_s = models.FloatField(null=True, blank=True)
    avg_imperial_s = models.FloatField(null=True, blank=True)
    refreshed_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "civ_stats_snapshot"
        verbose_name = "Civilization snapshot"
        ordering = ["-win_rate"]
        constraints = [
            # Binary outcome: every pick is exactly one win or one loss.
            models.CheckConstraint(
                condition=models.Q(wins__lte=models.F("total_picks")),
                name="civ_stats_snapshot_wins_lte_picks",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.civ}: {self.win_rate:.2%} over {self.total_picks} picks"

    def to_summary_json(self) -> dict:
        return {
            "name": self.civ,
            "winRate": round(self.win_rate, 4),
            "totalMatches": self.total_picks,
            "avgRating": round(self.avg_rating, 1) if self.avg_rating is not None else None,
            "playRate": round(self.pick_rate, 4),
        }


class MapStatsSnapshot(models.Model):
    """Corpus-wide totals for one map."""

    map = models.CharField(max_length=64, unique=True)
    map_lower = models.CharField(max_length=64, unique=True)
    total_matches = models.PositiveIntegerField(default=0)
    play_rate = models.FloatField(default=0.0)
    avg_duration_minutes = models.FloatField(null=True, blank=True)
    avg_rating = models.FloatField(null=True, blank=True)
    avg_players = models.FloatField(null=True, blank=True)
    refreshed_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "map_stats_snapshot"
        verbose_name = "Map snapshot"
        ordering = ["-total_matches"]

    def __str__(self) -> str:
        return f"{self.map}: {self.total_matches} matches"

    def to_summary_json(self) -> dict:
        return {
            "name": self.map,
            "totalMatches": self.total_matches,
            "playRate": round(self.play_rate, 4),
            "avgDurationMinutes": _round_or_none(self.avg_duration_minutes, 1),
            "avgRating": _round_or_none(self.avg_rating, 1),
            "avgPlayers": _round_or_none(self.avg_players, 2),
        }


class CivPatchSnapshot(models.Model):
    """
    Per-(civ, patch) results with the civ's standing inside that patch.

    `rank` is 1-based by win rate among civs meeting the patch minimum
    support; `play_rate` is the civ's share of the patch's picks.
    """

    civ = models.CharField(max_length=64)
    civ_lower = models.CharField(max_length=64, db_index=True)
    patch = models.CharField(max_length=32)
    games = models.PositiveIntegerField(default=0)
    wins = models.PositiveIntegerField(default=0)
    win_rate = models.FloatField(default=0.0)
    rank = models.PositiveSmallIntegerField(null=True, blank=True)
    total_civs = models.PositiveSmallIntegerField(default=0)
    play_rate = models.FloatField(default=0.0)
    refreshed_at = models.DateTimeField()

    class Meta:
        db_table = "civ_patch_snapshot"
        verbose_name = "Civilization patch snapshot"
        constraints = [
            models.UniqueConstraint(fields=["civ_lower", "patch"], name="civ_patch_snapshot_civ_patch_unique"),
        ]

    def __str__(self) -> str:
        return f"{self.civ} @ {self.patch}: #{self.rank or '-'} of {self.total_civs}"


class StatsSnapshot(models.Model):
    """
    Named, timestamped JSON snapshot of one computed facet (e.g. `civ:britons:rating`).

    Written back by the fallback ladder after a successful live computation.
    """

    key = models.CharField(max_length=191, primary_key=True)
    payload = models.JSONField()
    refreshed_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "stats_snapshot"
        verbose_name = "Stats snapshot"

    def __str__(self) -> str:
        return f"{self.key} @ {self.refreshed_at:%Y-%m-%d %H:%M}"


def _round_or_none(value: float | None, ndigits: int) -> float | None:
    return round(value, ndigits) if value is not None else None
