# apps/matches/models/match.py
# ================================================================================
"""The match-level record – one row per game, immutable once ingested."""

from __future__ import annotations

from typing import Self

from django.db import models
from django.db.models import Q

from common.text_utils import shadow_key


def shadow_key_q(shadow: str, key: str, display: str, name: str | None = None) -> Q:
    """
    Rows whose `shadow` column equals `key`. With `name`, also rows saved
    before the column was filled (`shadow == ""`) whose `display` column
    matches the name case-insensitively.
    """
    q = Q(**{shadow: key})
    if name and name.strip():
        q |= Q(**{shadow: "", f"{display}__iexact": name.strip()})
    return q


class MatchRecordQuerySet(models.QuerySet["MatchRecord"]):
    """Chainable filters used by the statistics engine."""

    def for_game_ids(self, game_ids: list[str]) -> Self:
        return self.filter(game_id__in=game_ids)

    def on_leaderboard(self, leaderboard: str | None) -> Self:
        return self.filter(leaderboard=leaderboard) if leaderboard else self

    def on_patch(self, patch: str | None) -> Self:
        return self.filter(patch=patch) if patch else self

    def on_map(self, map_lower: str, name: str | None = None) -> Self:
        return self.filter(shadow_key_q("map_lower", map_lower, "map", name))


class MatchRecordManager(models.Manager.from_queryset(MatchRecordQuerySet)):
    """Exposes the MatchRecordQuerySet methods on MatchRecord.objects."""


class MatchRecord(models.Model):
    """
    A single game. Written by the ingestion pipeline, read-only here.

    `duration` was stored at different magnitudes over the project's history
    (minutes, seconds, milliseconds, nanoseconds); always read it through
    `apps.civilizations.services.units.to_minutes`.
    """

    game_id = models.CharField(max_length=64, primary_key=True)
    map = models.CharField(max_length=64, blank=True, default="")
    map_lower = models.CharField(
        max_length=64,
        blank=True,
        default="",
        db_index=True,
        db_comment="Lower-cased `map`, used for case-insensitive lookups.",
    )
    duration = models.BigIntegerField(
        null=True,
        blank=True,
        db_comment="Game length in an ambiguous unit; see units.to_minutes.",
    )
    avg_elo = models.FloatField(null=True, blank=True)
    patch = models.CharField(max_length=32, blank=True, default="", db_index=True)
    leaderboard = models.CharField(max_length=32, blank=True, default="", db_index=True)
    num_players = models.PositiveSmallIntegerField(null=True, blank=True)
    started_timestamp = models.BigIntegerField(
        null=True,
        blank=True,
        db_index=True,
        db_comment="Epoch timestamp of when the game began.",
    )

    objects = MatchRecordManager()

    class Meta:
        db_table = "matches"
        verbose_name = "Match"
        verbose_name_plural = "Matches"
        ordering = ["-started_timestamp"]

    def __str__(self) -> str:
        return f"Match {self.game_id} on {self.map or 'unknown map'}"

    def save(self, *args, **kwargs) -> None:
        self.map_lower = shadow_key(self.map)
        super().save(*args, **kwargs)
