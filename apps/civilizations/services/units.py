# apps/civilizations/services/units.py
"""
Duration unit inference.

Historical ingestion stored `matches.duration` at four different magnitudes.
The unit is inferred from the magnitude of the value alone:

    value > 1e8   → nanoseconds   (÷ 6e10)
    value > 1e5   → milliseconds  (÷ 60 000)
    value > 1e3   → seconds       (÷ 60)
    otherwise     → minutes

Values that don't convert into a realistic game length are kept (and bucketed)
but reported through the `duration_unit_ambiguous` log event.
"""

from __future__ import annotations

import enum
import math
from collections import Counter
from decimal import Decimal
from numbers import Real
from typing import TYPE_CHECKING, Any, Final

import structlog

from apps.civilizations.conf import PLAUSIBLE_MINUTES_MAX, PLAUSIBLE_MINUTES_MIN

if TYPE_CHECKING:
    from collections.abc import Iterable

log = structlog.get_logger(__name__).bind(component="UnitInference")


class DurationUnit(enum.StrEnum):
    NANOSECONDS = "nanoseconds"
    MICROSECONDS = "microseconds"
    MILLISECONDS = "milliseconds"
    SECONDS = "seconds"
    MINUTES = "minutes"


# Minutes per one unit
MINUTES_DIVISOR: Final[dict[DurationUnit, float]] = {
    DurationUnit.NANOSECONDS: 6e10,
    DurationUnit.MICROSECONDS: 6e7,
    DurationUnit.MILLISECONDS: 60_000.0,
    DurationUnit.SECONDS: 60.0,
    DurationUnit.MINUTES: 1.0,
}

# Checked top-down; first threshold exceeded wins. Microseconds is never inferred.
UNIT_THRESHOLDS: Final[tuple[tuple[float, DurationUnit], ...]] = (
    (1e8, DurationUnit.NANOSECONDS),
    (1e5, DurationUnit.MILLISECONDS),
    (1e3, DurationUnit.SECONDS),
)


def _as_positive_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, Real | Decimal):
        return None
    number = float(value)
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def infer_unit(value: float) -> DurationUnit:
    for threshold, unit in UNIT_THRESHOLDS:
        if value > threshold:
            return unit
    return DurationUnit.MINUTES


def to_minutes(value: Any) -> float:
    """
    Convert a raw stored duration to minutes.

    Total over its input: None, NaN, infinities, non-numbers, zero and negative
    values all convert to 0.
    """
    number = _as_positive_float(value)
    if number is None:
        return 0.0
    return number / MINUTES_DIVISOR[infer_unit(number)]


def is_plausible(minutes: float) -> bool:
    return PLAUSIBLE_MINUTES_MIN <= minutes <= PLAUSIBLE_MINUTES_MAX


def convert_durations(values: Iterable[Any], *, context: str | None = None) -> list[float]:
    """
    `to_minutes` over a whole sample.

    Conversions that land outside a realistic game length are kept but
    reported once per sample as `duration_unit_ambiguous`.
    """
    converted: list[float] = []
    ambiguous: list[Any] = []
    for value in values:
        minutes = to_minutes(value)
        if minutes > 0 and not is_plausible(minutes):
            ambiguous.append(value)
        converted.append(minutes)

    if ambiguous:
        log.warning(
            "duration_unit_ambiguous",
            context=context,
            count=len(ambiguous),
            sample_size=len(converted),
            examples=ambiguous[:5],
            inferred=sorted({infer_unit(float(v)).value for v in ambiguous}),
        )
    return converted


def plausible_average(minutes: Iterable[float]) -> float | None:
    """Mean over realistic game lengths only; None when there are none."""
    kept = [m for m in minutes if is_plausible(m)]
    return round(sum(kept) / len(kept), 1) if kept else None


# ─── diagnostics ───────────────────────────────────────────────────────────────


def candidate_conversions(values: Iterable[Any]) -> dict[str, Any]:
    """
    Describe a raw duration sample under every unit assumption.

    Used by `diagnose_durations` to sanity-check the thresholds against live data.
    """
    raw = list(values)
    numbers = [n for n in (_as_positive_float(v) for v in raw) if n is not None]
    classified = Counter(infer_unit(n).value for n in numbers)

    candidates: dict[str, Any] = {}
    for unit, divisor in MINUTES_DIVISOR.items():
        converted = [n / divisor for n in numbers]
        plausible = sum(1 for m in converted if is_plausible(m))
        candidates[unit.value] = {
            "avgMinutes": round(sum(converted) / len(converted), 2) if converted else None,
            "plausible": plausible,
            "plausibleShare": round(plausible / len(converted), 4) if converted else None,
        }

    inferred = [to_minutes(n) for n in numbers]
    return {
        "sampleSize": len(numbers),
        "rejected": len(raw) - len(numbers),
        "min": min(numbers) if numbers else None,
        "max": max(numbers) if numbers else None,
        "classified": dict(classified),
        "candidates": candidates,
        "inferredPlausible": sum(1 for m in inferred if is_plausible(m)),
    }
