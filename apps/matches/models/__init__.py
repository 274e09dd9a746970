# apps/matches/models/__init__.py
# ================================================================================
"""
Match-data models.

`MatchRecord` (table `matches`) holds one row per game and `Participation`
(table `players`) one row per player per game. Both are owned by the ingestion
pipeline; this project only reads them (plus shadow-key backfills).
"""

from __future__ import annotations

from .match import MatchRecord, MatchRecordManager, MatchRecordQuerySet
from .participation import Participation, ParticipationManager, ParticipationQuerySet

__all__ = [
    "MatchRecord",
    "MatchRecordManager",
    "MatchRecordQuerySet",
    "Participation",
    "ParticipationManager",
    "ParticipationQuerySet",
]
