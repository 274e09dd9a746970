# apps/core/apps.py
# ================================================================================
from django.apps import AppConfig


class CoreConfig(AppConfig):
    """Project-wide plumbing: JSON error handlers and the health endpoint."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.core"
    verbose_name = "Core"
