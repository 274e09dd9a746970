# apps/civilizations/services/matchups.py
"""
Head-to-head matchup tables for one focal civilization.

A team game contributes several participation rows per opposing civ; each
(game, opponent civ) pair counts as exactly one observation, and the focal
side's result is taken from its own `winner` flag whenever it is present.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from apps.matches.conf import UNKNOWN_TEAMS
from common.text_utils import shadow_key

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .protocols import Row


@dataclass(slots=True)
class MatchupEdge:
    focal: str
    opponent: str
    games: int = 0
    focal_wins: int = 0
    opponent_wins: int = 0

    @property
    def win_rate(self) -> float:
        return round(self.focal_wins / self.games, 4) if self.games else 0.0

    def to_json(self) -> dict[str, Any]:
        return {"opponent": self.opponent, "games": self.games, "winRate": self.win_rate}


def build_matchup_edges(focal: str, rows: Iterable[Row]) -> dict[str, MatchupEdge]:
    """
    Fold participation rows (any order, any number of games) into one edge per opponent civ.

    Rows need `game_id`, `civ`, `team` and `winner`. Games the focal civ did
    not play in are ignored.
    """
    focal_key = shadow_key(focal)
    games: dict[str, list[Row]] = defaultdict(list)
    for row in rows:
        games[row["game_id"]].append(row)

    edges: dict[str, MatchupEdge] = {}
    for game_rows in games.values():
        focal_row = next((r for r in game_rows if shadow_key(r["civ"]) == focal_key), None)
        if focal_row is None:
            continue

        focal_team = focal_row.get("team")
        team_known = focal_team not in UNKNOWN_TEAMS
        focal_won = focal_row.get("winner")

        seen: set[str] = set()
        for r in game_rows:
            opp_key = shadow_key(r["civ"])
            if not opp_key or opp_key == focal_key or opp_key in seen:
                continue
            if team_known and r.get("team") == focal_team:
                continue
            seen.add(opp_key)

            opponent_won = bool(r.get("winner"))
            won = bool(focal_won) if focal_won is not None else not opponent_won

            edge = edges.get(opp_key)
            if edge is None:
                edge = edges[opp_key] = MatchupEdge(focal=focal, opponent=r["civ"])
            edge.games += 1
            edge.focal_wins += won
            edge.opponent_wins += opponent_won

    return edges


def best_against(edges: Iterable[MatchupEdge], *, min_support: int, limit: int) -> list[MatchupEdge]:
    """Opponents the focal civ beats more often than not, strongest first."""
    pool = [e for e in edges if e.games >= min_support and e.win_rate > 0.5]
    return heapq.nlargest(limit, pool, key=lambda e: (e.win_rate, e.games))


def worst_against(edges: Iterable[MatchupEdge], *, min_support: int, limit: int) -> list[MatchupEdge]:
    """Opponents the focal civ doesn't beat more often than not, weakest result first."""
    pool = [e for e in edges if e.games >= min_support and e.win_rate <= 0.5]
    return heapq.nsmallest(limit, pool, key=lambda e: (e.win_rate, -e.games))
