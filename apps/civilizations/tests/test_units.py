import math
from decimal import Decimal

import pytest
import structlog
from structlog.testing import LogCapture

from apps.civilizations.services import units
from apps.civilizations.services.units import (
    DurationUnit,
    candidate_conversions,
    convert_durations,
    infer_unit,
    is_plausible,
    plausible_average,
    to_minutes,
)


@pytest.fixture
def unit_logs(monkeypatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(units, "log", structlog.wrap_logger(None, processors=[capture]))
    return capture


@pytest.mark.parametrize(
    ("raw", "unit", "minutes"),
    [
        (1_800_000_000_000, DurationUnit.NANOSECONDS, 30.0),
        (1_800_000, DurationUnit.MILLISECONDS, 30.0),
        (1800, DurationUnit.SECONDS, 30.0),
        (30, DurationUnit.MINUTES, 30.0),
        (1000, DurationUnit.MINUTES, 1000.0),
        (100_000, DurationUnit.SECONDS, 100_000 / 60),
    ],
)
def test_magnitude_decides_the_unit(raw, unit, minutes):
    assert infer_unit(raw) is unit
    assert to_minutes(raw) == pytest.approx(minutes)


@pytest.mark.parametrize("raw", [None, 0, -5, math.nan, math.inf, "1800", True, object()])
def test_unreadable_values_convert_to_zero(raw):
    assert to_minutes(raw) == 0.0


def test_decimal_is_accepted():
    assert to_minutes(Decimal("1800")) == pytest.approx(30.0)


def test_plausibility_window_is_inclusive():
    assert is_plausible(5.0)
    assert is_plausible(120.0)
    assert not is_plausible(4.99)
    assert not is_plausible(120.01)


def test_implausible_conversions_are_kept_and_logged_once(unit_logs):
    converted = convert_durations([1800, 2_000_000_000_000_000, 90_000], context="test")

    assert converted[0] == pytest.approx(30.0)
    assert len(converted) == 3
    warnings = [entry for entry in unit_logs.entries if entry["event"] == "duration_unit_ambiguous"]
    assert len(warnings) == 1
    assert warnings[0]["count"] == 2
    assert warnings[0]["sample_size"] == 3


def test_clean_sample_logs_nothing(unit_logs):
    convert_durations([1800, 2400], context="test")
    assert unit_logs.entries == []


def test_plausible_average_ignores_outliers():
    assert plausible_average([30.0, 40.0, 1000.0, 0.0]) == 35.0
    assert plausible_average([0.0, 2000.0]) is None


def test_candidate_conversions_report():
    report = candidate_conversions([1800, 2_400_000, None, "x"])

    assert report["sampleSize"] == 2
    assert report["rejected"] == 2
    assert report["classified"] == {"seconds": 1, "milliseconds": 1}
    assert report["inferredPlausible"] == 2
    assert set(report["candidates"]) == {u.value for u in DurationUnit}
    assert report["candidates"]["seconds"]["plausible"] == 1
