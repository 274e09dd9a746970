# apps/matches/conf.py
# ================================================================================
"""Constants for the 'matches' app."""

from __future__ import annotations

from typing import Final

# ─── Shadow-key maintenance ────────────────────────────────────────────────────
# Rows updated per statement when backfilling `civ_lower` / `map_lower`.
SHADOW_KEY_BATCH_SIZE: Final[int] = 5000

# Ingestion writes these team values when the side is not known.
UNKNOWN_TEAMS: Final[frozenset[int | None]] = frozenset({None, -1})
