import math

import pytest

from apps.civilizations.services.bucketing import (
    DURATION_SPEC,
    NO_DATA,
    RATING_SPEC,
    BucketSpec,
    BucketStat,
    apply_min_support,
    categorical_histogram,
    histogram,
    patch_sort_key,
)


@pytest.mark.parametrize(
    ("value", "label"),
    [
        (849.9, "<850"),
        (850, "850-1000"),
        (999.99, "850-1000"),
        (1000, "1000-1200"),
        (1599, "1200-1600"),
        (1899, "1600-1900"),
        (1900, "1900+"),
        (2600, "1900+"),
    ],
)
def test_rating_edges_are_half_open(value, label):
    assert RATING_SPEC.assign(value) == label


@pytest.mark.parametrize(("minutes", "label"), [(3, "<15min"), (15, "15-25min"), (59.9, "45-60min"), (60, ">60min")])
def test_duration_edges(minutes, label):
    assert DURATION_SPEC.assign(minutes) == label


def test_spec_validation():
    with pytest.raises(ValueError, match="strictly increasing"):
        BucketSpec((1, 1, 2), ("a", "b"), "lo", "hi")
    with pytest.raises(ValueError, match="one label"):
        BucketSpec((1, 2, 3), ("a",), "lo", "hi")


def test_histogram_counts_every_value_exactly_once():
    observations = [
        (800, True),
        (900, False),
        (1100, True),
        (1100, True),
        (2000, False),
        (None, True),
        (math.nan, True),
    ]

    buckets = histogram(observations, RATING_SPEC)

    assert [b.label for b in buckets] == list(RATING_SPEC.all_labels)
    assert sum(b.count for b in buckets) == 5
    by_label = {b.label: b for b in buckets}
    assert by_label["1000-1200"].count == 2
    assert by_label["1000-1200"].win_rate == 1.0
    assert by_label["1000-1200"].share_of_cohort == 0.4
    assert by_label["1200-1600"].win_rate is NO_DATA


def test_empty_bucket_serialises_win_rate_as_null():
    assert BucketStat("x").to_json() == {
        "label": "x",
        "count": 0,
        "winCount": 0,
        "winRate": None,
        "shareOfCohort": 0.0,
    }


def test_min_support_drops_sparse_buckets():
    buckets = histogram([(1100, True)] * 4 + [(1300, False)] * 3, RATING_SPEC)
    kept = apply_min_support(buckets, 4)
    assert [b.label for b in kept] == ["1000-1200"]


def test_patches_sort_numerically_newest_first():
    observations = [("9.2", True), ("10.1", False), ("10.1", True), ("", True), (None, False)]

    buckets = categorical_histogram(observations)

    assert [b.label for b in buckets] == ["10.1", "9.2"]
    assert buckets[0].share_of_cohort == pytest.approx(2 / 3, abs=1e-4)


def test_limit_keeps_shares_relative_to_full_cohort():
    observations = [("1", True), ("2", True), ("3", True), ("4", False)]

    buckets = categorical_histogram(observations, limit=2)

    assert [b.label for b in buckets] == ["4", "3"]
    assert all(b.share_of_cohort == 0.25 for b in buckets)


def test_patch_sort_key():
    assert patch_sort_key("v1.10.2") > patch_sort_key("v1.9.9")
    assert patch_sort_key(101129) == (101129,)
