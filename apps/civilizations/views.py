# apps/civilizations/views.py
# ======================================================================
"""Asynchronous API views for civilization and map statistics."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from apps.civilizations.conf import STATS_SETTINGS, TIMEOUTS
from apps.civilizations.services.stats_service import SummaryFilters, get_stats_service
from common.views_utils import BaseAppView

if TYPE_CHECKING:
    from django.http import HttpRequest

log = structlog.get_logger(__name__).bind(component="CivilizationViews")


def _summary_params(view: BaseAppView, request: HttpRequest) -> dict[str, Any]:
    return {
        "leaderboard": view.get_str_param(request, "leaderboard"),
        "patch": view.get_str_param(request, "patch"),
        "min_matches": view.get_int_param(request, "min_matches", default=None, min_val=1, max_val=1_000_000),
    }


# --- /civilizations ---
class CivilizationSummaryView(BaseAppView):
    """GET /api/v1/civilizations – every civ's win rate, matches, rating and play rate."""

    CACHE_TTL = TIMEOUTS["civ_summary"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return _summary_params(self, request)

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_civilization_summary(SummaryFilters(**p))


# --- /civilizations/<name> ---
class CivilizationDetailView(BaseAppView):
    """GET /api/v1/civilizations/<name> – totals, age-ups and rating/patch/duration breakdowns."""

    CACHE_TTL = TIMEOUTS["civ_detail"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {"name": kwargs["name"]}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_civilization_detail(p["name"])


class _MatchupView(BaseAppView):
    CACHE_TTL = TIMEOUTS["civ_matchups"]
    SIDE: str

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {
            "name": kwargs["name"],
            "limit": self.get_int_param(
                request,
                "limit",
                default=STATS_SETTINGS.matchup_limit,
                min_val=1,
                max_val=STATS_SETTINGS.matchup_limit,
            ),
        }

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        service = get_stats_service()
        if self.SIDE == "best":
            return await service.get_best_against(p["name"], limit=p["limit"])
        return await service.get_worst_against(p["name"], limit=p["limit"])


# --- /civilizations/<name>/best-against ---
class BestAgainstView(_MatchupView):
    """Opponents this civ beats most often."""

    SIDE = "best"


# --- /civilizations/<name>/worst-against ---
class WorstAgainstView(_MatchupView):
    """Opponents this civ struggles against."""

    SIDE = "worst"


# --- /civilizations/<name>/maps ---
class CivilizationMapsView(BaseAppView):
    CACHE_TTL = TIMEOUTS["civ_maps"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {"name": kwargs["name"]}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_map_performance(p["name"])


# --- /civilizations/<name>/openings ---
class CivilizationOpeningsView(BaseAppView):
    """Opening strategies this civ plays, with win rate, rating and age-up times."""

    CACHE_TTL = TIMEOUTS["civ_openings"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {"name": kwargs["name"]}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_openings(p["name"])


# --- /civilizations/filters ---
class CivilizationFiltersView(BaseAppView):
    """GET /api/v1/civilizations/filters – leaderboards, recent patches, maps and civs to filter by."""

    CACHE_TTL = TIMEOUTS["civ_filters"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_filter_options()


# --- /maps ---
class MapSummaryView(BaseAppView):
    """GET /api/v1/maps – play rate, duration, rating and lobby size per map."""

    CACHE_TTL = TIMEOUTS["map_summary"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {"min_matches": self.get_int_param(request, "min_matches", default=None, min_val=1, max_val=1_000_000)}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_map_summary(SummaryFilters(min_matches=p["min_matches"]))


# --- /maps/<name> ---
class MapDetailView(BaseAppView):
    CACHE_TTL = TIMEOUTS["map_detail"]

    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        return {"name": kwargs["name"]}

    async def _produce_payload(self, p: dict[str, Any]) -> dict[str, Any]:
        return await get_stats_service().get_map_detail(p["name"])
