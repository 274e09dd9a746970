"""
apps.core.views
---------------

Project-wide endpoints served outside the versioned API:

    from apps.core.views import health_check
"""

from __future__ import annotations

from .custom_handler import json_404_handler, json_500_handler
from .health import health_check

__all__: list[str] = [
    "health_check",
    "json_404_handler",
    "json_500_handler",
]
