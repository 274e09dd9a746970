import time

import pytest

from apps.civilizations.errors import StatsNotFound, UpstreamUnavailable
from apps.civilizations.services.stats_service import SummaryFilters


async def test_detail_live_from_sample(service, snapshots):
    result = await service.get_civilization_detail("BRITONS")

    assert result["civilization"] == "Britons"
    assert result["stats"]["totalPicks"] == 13
    assert result["stats"]["wins"] == 6
    assert result["stats"]["winRate"] == round(6 / 13, 4)
    assert result["ageUpTimes"] == {"feudal": 640.0, "castle": 990.0, "imperial": 1500.0}
    assert [b["label"] for b in result["ratingBuckets"]] == ["1000-1200"]
    assert [(b["label"], b["count"]) for b in result["durationBuckets"]] == [("25-35min", 5), ("35-45min", 8)]
    assert result["patchBreakdown"][0]["patch"] == "101129"

    meta = result["meta"]
    assert meta["source"] == "live"
    assert meta["degraded"] is False
    assert set(meta["facets"]) == {"stats", "ratingBuckets", "patchBreakdown", "durationBuckets"}
    assert meta["minSupport"] == {"bucket": 4, "patch": 5}
    assert set(snapshots.written) == {"civ:britons:rating", "civ:britons:patch", "civ:britons:duration"}


async def test_legacy_rows_count_for_names_resolved_by_spelling(service, repo, civ_lookup, game_factory):
    for i in range(3):
        players, match = game_factory(f"legacy{i}", [("Byzantines", 1, i == 0), ("Franks", 2, i != 0)])
        players[0]["civ_lower"] = ""
        repo.participations.extend(players)
        repo.matches[match["game_id"]] = match
    civ_lookup.exact.add("Byzantines")

    result = await service.get_civilization_detail("byzantines")

    assert result["civilization"] == "Byzantines"
    assert result["stats"]["totalPicks"] == 3
    assert result["stats"]["wins"] == 1
    assert result["meta"]["degraded"] is False


async def test_detail_prefers_snapshots(service, snapshots, stale_entry, repo):
    snapshots.totals["britons"] = stale_entry(
        {
            "stats": {"totalPicks": 900, "wins": 450, "losses": 450, "winRate": 0.5, "avgRating": 1100.0,
                      "avgDurationMinutes": None},
            "ageUpTimes": {"feudal": 600, "castle": 950, "imperial": 1400},
        },
        age_s=60,
    )
    for facet in ("rating", "patch"):
        snapshots.entries[f"civ:britons:{facet}"] = stale_entry([], age_s=60)
    snapshots.entries["civ:britons:duration"] = stale_entry({"buckets": [], "avgDurationMinutes": 33.3}, age_s=60)

    result = await service.get_civilization_detail("britons")

    assert result["meta"]["source"] == "snapshot"
    assert result["stats"]["totalPicks"] == 900
    assert result["stats"]["avgDurationMinutes"] == 33.3
    assert repo.calls == []


async def test_live_timeout_degrades_to_stale_snapshot_within_budget(service, snapshots, stale_entry, repo):
    snapshots.entries["civ:britons:rating"] = stale_entry([{"label": "1000-1200", "count": 40}], age_s=10 * 86400)
    repo.delay_s = 5

    started = time.perf_counter()
    result = await service.get_civilization_detail("britons")
    elapsed = time.perf_counter() - started

    # Facets run concurrently: bounded by the slowest budget, not their sum.
    assert elapsed < 1.5
    assert result["ratingBuckets"] == [{"label": "1000-1200", "count": 40}]
    assert result["meta"]["facets"]["ratingBuckets"]["source"] == "stale_snapshot"
    assert result["meta"]["facets"]["stats"]["source"] == "fallback"
    assert result["stats"]["winRate"] is None
    assert result["ageUpTimes"] == {"feudal": 660, "castle": 960, "imperial": 1380}
    assert all(b["placeholder"] for b in result["durationBuckets"])
    assert result["meta"]["degraded"] is True
    assert result["meta"]["source"] == "mixed"
    assert snapshots.written == {}


async def test_unknown_civ_is_not_found(service):
    with pytest.raises(StatsNotFound):
        await service.get_civilization_detail("Atlanteans")


async def test_upstream_outage_is_fatal(service, repo):
    repo.error = UpstreamUnavailable("connection refused")

    with pytest.raises(UpstreamUnavailable):
        await service.get_best_against("britons")


async def test_resolver_timeout_uses_unverified_guess(service, civ_lookup):
    civ_lookup.delay_s = 5

    result = await service.get_map_performance("bRITONS")

    assert result["civilization"] == "Britons"
    assert result["meta"]["identity"] == "unverified"
    assert result["meta"]["degraded"] is True


async def test_best_and_worst_against(service, snapshots):
    best = await service.get_best_against("britons")
    worst = await service.get_worst_against("britons", limit=1)

    assert best["opponents"] == [{"opponent": "Franks", "games": 8, "winRate": 0.75}]
    assert worst["opponents"] == [{"opponent": "Mayans", "games": 5, "winRate": 0.0}]
    assert set(snapshots.written["civ:britons:matchups"]) == {"best", "worst"}


async def test_map_performance(service):
    result = await service.get_map_performance("britons")

    assert result["maps"] == [
        {"map": "Arabia", "games": 8, "wins": 6, "winRate": 0.75},
        {"map": "Arena", "games": 5, "wins": 0, "winRate": 0.0},
    ]


async def test_summary_uses_snapshot_only_for_unfiltered_corpus(service, snapshots, stale_entry, repo):
    snapshots.summary = stale_entry([{"name": "Britons", "winRate": 0.51}], age_s=60)

    unfiltered = await service.get_civilization_summary()
    filtered = await service.get_civilization_summary(SummaryFilters(leaderboard="rm_1v1", min_matches=1))

    assert unfiltered["meta"]["source"] == "snapshot"
    assert filtered["meta"]["source"] == "live"
    assert filtered["meta"]["filters"] == {"leaderboard": "rm_1v1"}
    assert {c["name"] for c in filtered["civilizations"]} == {"Britons", "Franks", "Mayans"}


async def test_map_summary_and_detail(service):
    summary = await service.get_map_summary(SummaryFilters(min_matches=1))
    detail = await service.get_map_detail("ARENA")

    assert [m["name"] for m in summary["maps"]] == ["Arabia", "Arena"]
    assert detail["map"] == "Arena"
    assert detail["stats"]["totalMatches"] == 5
    assert detail["stats"]["avgDurationMinutes"] == 40.0
    assert detail["durationBuckets"] == [{"label": "35-45min", "count": 5, "shareOfCohort": 1.0}]
    assert detail["civilizations"][0] == {"name": "Mayans", "games": 5, "winRate": 1.0}


async def test_openings_per_strategy(service, repo, snapshots):
    franks_games = {f"g{i}" for i in range(1, 9)}
    for p in repo.participations:
        if p["civ"] == "Britons":
            p["opening"] = "Scouts" if p["game_id"] in franks_games else "Fast Castle"

    result = await service.get_openings("britons")

    assert [(o["opening"], o["games"], o["winRate"]) for o in result["openings"]] == [
        ("Scouts", 8, 0.75),
        ("Fast Castle", 5, 0.0),
    ]
    assert result["openings"][1]["avgDurationMinutes"] == 40.0
    assert result["meta"]["minSupport"] == {"opening": 3}
    assert "civ:britons:openings" in snapshots.written


async def test_civ_without_recorded_openings_has_none(service):
    result = await service.get_openings("franks")

    assert result["openings"] == []
    assert result["meta"]["degraded"] is False


async def test_filter_options(service, snapshots):
    result = await service.get_filter_options()

    assert result["civilizations"] == ["Britons", "Franks", "Mayans"]
    assert result["leaderboards"] == ["rm_1v1"]
    assert result["patches"] == ["101129"]
    assert result["maps"] == ["Arabia", "Arena"]
    assert result["ratingRange"] == {"min": 1100, "max": 1100, "avg": 1100}
    assert result["meta"]["source"] == "live"
    assert "filters:options" in snapshots.written


async def test_filter_options_fall_back_when_the_store_is_slow(service, repo):
    repo.delay_s = 5

    result = await service.get_filter_options()

    assert result["civilizations"] == []
    assert result["ratingRange"] is None
    assert result["meta"]["degraded"] is True
