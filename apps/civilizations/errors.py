"""Exception taxonomy for the statistics engine."""

from __future__ import annotations

from django.http import Http404


class StatsError(Exception):
    """Base class for all statistics-engine errors."""


class StatsNotFound(StatsError, Http404):
    """
    A civilization or map name did not resolve to a stored identifier.

    Also an `Http404`, so views render it as a structured 404 body.
    """

    def __init__(self, resource: str, name: str) -> None:
        self.resource = resource
        self.name = name
        super().__init__(f"{resource.capitalize()} '{name}' not found.")

    def to_json(self) -> dict[str, str]:
        return {
            "error": "not_found",
            "resource": self.resource,
            "name": self.name,
            "detail": str(self),
        }


class StatsTimeout(StatsError):
    """A bounded query exceeded its time budget."""

    def __init__(self, stage: str, budget_s: float) -> None:
        self.stage = stage
        self.budget_s = budget_s
        super().__init__(f"Stage '{stage}' exceeded its {budget_s:.2f}s budget.")


class UpstreamUnavailable(StatsError):
    """The data store itself cannot be reached. Fatal for the request."""
