# apps/matches/models/participation.py
# ================================================================================
"""Per-player-per-game record. The statistics engine samples this table."""

from __future__ import annotations

from typing import Self

from django.db import models

from common.text_utils import shadow_key

from .match import shadow_key_q


class ParticipationQuerySet(models.QuerySet["Participation"]):
    def for_civ(self, civ_lower: str, name: str | None = None) -> Self:
        return self.filter(shadow_key_q("civ_lower", civ_lower, "civ", name))

    def on_map(self, map_lower: str, name: str | None = None) -> Self:
        return self.filter(shadow_key_q("game__map_lower", map_lower, "game__map", name))

    def in_games(self, game_ids: list[str]) -> Self:
        return self.filter(game_id__in=game_ids)

    def missing_shadow_key(self) -> Self:
        return self.filter(civ_lower="").exclude(civ="")


class ParticipationManager(models.Manager.from_queryset(ParticipationQuerySet)):
    """Exposes the ParticipationQuerySet methods on Participation.objects."""


class Participation(models.Model):
    """
    One player's civilization and outcome in one game.

    `civ_lower` is the shadow key the identity resolver queries first; rows
    ingested before the column existed are filled in by `backfill_shadow_keys`.
    """

    game = models.ForeignKey(
        "matches.MatchRecord",
        on_delete=models.DO_NOTHING,
        related_name="participants",
        to_field="game_id",
        db_column="game_id",
        db_constraint=False,
        db_comment="Ingestion writes both tables independently; no FK constraint.",
    )
    profile_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    civ = models.CharField(max_length=64)
    civ_lower = models.CharField(max_length=64, blank=True, default="", db_index=True)
    team = models.SmallIntegerField(null=True, blank=True)
    winner = models.BooleanField(default=False)
    old_rating = models.IntegerField(null=True, blank=True)
    new_rating = models.IntegerField(null=True, blank=True)

    # --- Age-up timings (seconds of in-game time) ---
    feudal_age_uptime = models.FloatField(null=True, blank=True)
    castle_age_uptime = models.FloatField(null=True, blank=True)
    imperial_age_uptime = models.FloatField(null=True, blank=True)

    opening = models.CharField(max_length=64, blank=True, default="")

    objects = ParticipationManager()

    class Meta:
        db_table = "players"
        verbose_name = "Participation"
        indexes = [
            models.Index(fields=["civ_lower", "winner"], name="players_civ_lower_winner_idx"),
            models.Index(fields=["game", "team"], name="players_game_team_idx"),
        ]

    def __str__(self) -> str:
        outcome = "won" if self.winner else "lost"
        return f"{self.civ} {outcome} game {self.game_id}"

    def save(self, *args, **kwargs) -> None:
        self.civ_lower = shadow_key(self.civ)
        super().save(*args, **kwargs)
