"""
Main URL configuration for the async statistics API.
"""

# Django Imports
from django.conf import settings
from django.urls import include, path
from django.views import defaults as default_views

# -----------------------------------------------------------------
# API URL Patterns
# Grouping API endpoints here makes versioning (e.g., v2) clean.
# -----------------------------------------------------------------
api_v1_patterns = [
    path("civilizations", include("apps.civilizations.urls")),
    path("maps", include("apps.civilizations.map_urls")),
]

# -----------------------------------------------------------------
# Main URL Patterns
# -----------------------------------------------------------------
urlpatterns = [
    # --- API Versioning ---
    path("api/v1/", include(api_v1_patterns)),
]

# --- Global Error Handlers for API ---
# Unmatched URLs and unhandled errors return JSON instead of HTML.
handler404 = "apps.core.views.custom_handler.json_404_handler"
handler500 = "apps.core.views.custom_handler.json_500_handler"

# -----------------------------------------------------------------
# Development-Only Patterns (DEBUG=True)
# -----------------------------------------------------------------
if settings.DEBUG:
    # Error page previews
    urlpatterns += [
        path("404/", default_views.page_not_found, kwargs={"exception": Exception("Page not Found")}),
        path("500/", default_views.server_error),
    ]
