# apps/civilizations/map_urls.py
# ================================================================================
"""URLConf for the Maps API (async views)."""

from __future__ import annotations

from django.urls import path

from .views import MapDetailView, MapSummaryView

app_name = "maps"

urlpatterns = [
    path("", MapSummaryView.as_view(), name="summary"),
    path("/<str:name>", MapDetailView.as_view(), name="detail"),
]
