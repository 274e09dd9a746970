import asyncio

import pytest

from apps.civilizations.errors import StatsNotFound, StatsTimeout, UpstreamUnavailable
from apps.civilizations.services.resilience import (
    TRANSITIONS,
    FallbackLadder,
    Outcome,
    Source,
    Stage,
    next_stage,
)


def _ladder(**overrides) -> FallbackLadder:
    params = {"staleness_s": 60, "snapshot_budget_s": 0.2, "live_budget_s": 0.2} | overrides
    return FallbackLadder("test", **params)


async def _live_payload():
    return {"live": True}


async def _slow():
    await asyncio.sleep(5)


def _static():
    return {"static": True}


def test_every_non_terminal_stage_has_exits():
    assert {stage for stage, _ in TRANSITIONS} == {Stage.CHECK_SNAPSHOT, Stage.LIVE, Stage.FALLBACK}
    assert next_stage(Stage.LIVE, Outcome.TIMEOUT) is Stage.FALLBACK


def test_unknown_transition_is_rejected():
    with pytest.raises(ValueError, match="No transition"):
        next_stage(Stage.FALLBACK, Outcome.HIT)


async def test_fresh_snapshot_skips_live(stale_entry):
    called = False

    async def live():
        nonlocal called
        called = True

    async def read():
        return stale_entry({"snap": True}, age_s=10)

    result = await _ladder().run(read_snapshot=read, compute_live=live, static_fallback=_static)

    assert result.payload == {"snap": True}
    assert result.source is Source.SNAPSHOT
    assert not result.degraded
    assert not called
    assert result.trace == [("check_snapshot", "hit")]


async def test_miss_goes_live_and_writes_back():
    written = []

    async def read():
        return None

    result = await _ladder().run(
        read_snapshot=read,
        compute_live=_live_payload,
        static_fallback=_static,
        write_back=written.append,
    )

    assert result.source is Source.LIVE
    assert written == [{"live": True}]
    assert result.trace == [("check_snapshot", "miss"), ("live", "success")]


async def test_stale_snapshot_is_refreshed_live(stale_entry):
    async def read():
        return stale_entry({"old": True}, age_s=3600)

    result = await _ladder().run(read_snapshot=read, compute_live=_live_payload, static_fallback=_static)

    assert result.payload == {"live": True}
    assert result.trace[0] == ("check_snapshot", "stale")


async def test_live_timeout_serves_stale_snapshot(stale_entry):
    async def read():
        return stale_entry({"old": True}, age_s=3600)

    result = await _ladder().run(read_snapshot=read, compute_live=_slow, static_fallback=_static)

    assert result.payload == {"old": True}
    assert result.source is Source.STALE_SNAPSHOT
    assert result.degraded
    assert result.trace == [("check_snapshot", "stale"), ("live", "timeout"), ("fallback", "served")]
    assert result.elapsed_ms < 1000


@pytest.mark.parametrize("error", [StatsTimeout("rating", 1.0), RuntimeError("boom")])
async def test_live_failure_without_snapshot_serves_static(error):
    async def live():
        raise error

    result = await _ladder().run(read_snapshot=None, compute_live=live, static_fallback=_static)

    assert result.payload == {"static": True}
    assert result.source is Source.FALLBACK
    assert result.degraded


async def test_write_back_is_skipped_on_fallback():
    written = []

    await _ladder().run(read_snapshot=None, compute_live=_slow, static_fallback=_static, write_back=written.append)

    assert written == []


async def test_write_back_errors_do_not_fail_the_request():
    def explode(payload):
        raise RuntimeError("disk full")

    result = await _ladder().run(
        read_snapshot=None,
        compute_live=_live_payload,
        static_fallback=_static,
        write_back=explode,
    )

    assert result.source is Source.LIVE


async def test_slow_or_broken_snapshot_reads_count_as_miss():
    async def broken():
        raise RuntimeError("relation does not exist")

    for read in (_slow, broken):
        result = await _ladder().run(read_snapshot=read, compute_live=_live_payload, static_fallback=_static)
        assert result.source is Source.LIVE


@pytest.mark.parametrize("error", [UpstreamUnavailable("db down"), StatsNotFound("civilization", "x")])
async def test_fatal_errors_escape_the_ladder(error):
    async def live():
        raise error

    with pytest.raises(type(error)):
        await _ladder().run(read_snapshot=None, compute_live=live, static_fallback=_static)


async def test_ladder_that_finishes_without_payload_raises(monkeypatch):
    monkeypatch.setitem(TRANSITIONS, (Stage.CHECK_SNAPSHOT, Outcome.MISS), Stage.DONE)

    with pytest.raises(RuntimeError, match="without a payload"):
        await _ladder().run(read_snapshot=None, compute_live=_live_payload, static_fallback=_static)
