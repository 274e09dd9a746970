# apps/matches/apps.py
# ================================================================================
from django.apps import AppConfig


class MatchesConfig(AppConfig):
    """Match and participation records shared by every statistics app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.matches"
    verbose_name = "Match records"
