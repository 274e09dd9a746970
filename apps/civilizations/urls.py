# apps/civilizations/urls.py
# ================================================================================
"""URLConf for the Civilizations API (async views)."""

from __future__ import annotations

from django.urls import include, path

from .views import (
    BestAgainstView,
    CivilizationDetailView,
    CivilizationFiltersView,
    CivilizationMapsView,
    CivilizationOpeningsView,
    CivilizationSummaryView,
    WorstAgainstView,
)

app_name = "civilizations"

civ_name_patterns = [
    path("", CivilizationDetailView.as_view(), name="detail"),
    path("/best-against", BestAgainstView.as_view(), name="best-against"),
    path("/worst-against", WorstAgainstView.as_view(), name="worst-against"),
    path("/maps", CivilizationMapsView.as_view(), name="maps"),
    path("/openings", CivilizationOpeningsView.as_view(), name="openings"),
]

urlpatterns = [
    path("", CivilizationSummaryView.as_view(), name="summary"),
    # Before the <name> routes so "filters" is not taken for a civilization.
    path("/filters", CivilizationFiltersView.as_view(), name="filters"),
    path("/<str:name>", include(civ_name_patterns)),
]
