# apps/civilizations/apps.py
# ================================================================================
from django.apps import AppConfig


class CivilizationsConfig(AppConfig):
    """Civilization and map statistics: snapshots, live sampling, fallbacks."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.civilizations"
    verbose_name = "Civilization statistics"
