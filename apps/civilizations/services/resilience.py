# apps/civilizations/services/resilience.py
"""
The degradation ladder: snapshot → live sampled aggregation → fallback.

    CHECK_SNAPSHOT ──HIT──────────────────────────────▶ DONE
          │ MISS / STALE
          ▼
        LIVE ──SUCCESS (+ write-back, fire-and-forget)─▶ DONE
          │ FAILURE / TIMEOUT
          ▼
      FALLBACK ──SERVED (stale snapshot, else static)─▶ DONE

Transitions live in one table and are applied by the pure `next_stage`.
`UpstreamUnavailable` and `StatsNotFound` escape the ladder; every other
failure ends in a defined fallback payload.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import structlog
from django.utils import timezone

from apps.civilizations.errors import StatsNotFound, StatsTimeout, UpstreamUnavailable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from .protocols import SnapshotEntry

log = structlog.get_logger(__name__).bind(component="FallbackLadder")


class Stage(enum.StrEnum):
    CHECK_SNAPSHOT = "check_snapshot"
    LIVE = "live"
    FALLBACK = "fallback"
    DONE = "done"


class Outcome(enum.StrEnum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SERVED = "served"


class Source(enum.StrEnum):
    SNAPSHOT = "snapshot"
    LIVE = "live"
    STALE_SNAPSHOT = "stale_snapshot"
    FALLBACK = "fallback"


TRANSITIONS: Final[dict[tuple[Stage, Outcome], Stage]] = {
    (Stage.CHECK_SNAPSHOT, Outcome.HIT): Stage.DONE,
    (Stage.CHECK_SNAPSHOT, Outcome.MISS): Stage.LIVE,
    (Stage.CHECK_SNAPSHOT, Outcome.STALE): Stage.LIVE,
    (Stage.LIVE, Outcome.SUCCESS): Stage.DONE,
    (Stage.LIVE, Outcome.FAILURE): Stage.FALLBACK,
    (Stage.LIVE, Outcome.TIMEOUT): Stage.FALLBACK,
    (Stage.FALLBACK, Outcome.SERVED): Stage.DONE,
}


def next_stage(stage: Stage, outcome: Outcome) -> Stage:
    try:
        return TRANSITIONS[(stage, outcome)]
    except KeyError:
        msg = f"No transition from {stage} on {outcome}"
        raise ValueError(msg) from None


@dataclass(slots=True)
class LadderResult:
    payload: Any
    source: Source
    degraded: bool
    trace: list[tuple[str, str]] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def meta(self) -> dict[str, Any]:
        return {"source": self.source.value, "degraded": self.degraded, "elapsedMs": round(self.elapsed_ms, 1)}


class FallbackLadder:
    """
    Runs one facet through the ladder.

    `read_snapshot` may be None for facets that are never snapshotted
    (filtered corpus summaries); the ladder then starts with a MISS.
    """

    def __init__(
        self,
        name: str,
        *,
        staleness_s: float,
        snapshot_budget_s: float,
        live_budget_s: float,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        self.name = name
        self.staleness_s = staleness_s
        self.snapshot_budget_s = snapshot_budget_s
        self.live_budget_s = live_budget_s
        self._clock = clock

    async def run(
        self,
        *,
        read_snapshot: Callable[[], Awaitable[SnapshotEntry | None]] | None,
        compute_live: Callable[[], Awaitable[Any]],
        static_fallback: Callable[[], Any],
        write_back: Callable[[Any], None] | None = None,
    ) -> LadderResult:
        started = time.perf_counter()
        trace: list[tuple[str, str]] = []
        stale: SnapshotEntry | None = None
        result: LadderResult | None = None
        stage = Stage.CHECK_SNAPSHOT

        while stage is not Stage.DONE:
            if stage is Stage.CHECK_SNAPSHOT:
                outcome, entry = await self._check_snapshot(read_snapshot)
                if outcome is Outcome.HIT:
                    result = LadderResult(entry.payload, Source.SNAPSHOT, degraded=False)
                elif outcome is Outcome.STALE:
                    stale = entry

            elif stage is Stage.LIVE:
                outcome, payload = await self._compute_live(compute_live)
                if outcome is Outcome.SUCCESS:
                    result = LadderResult(payload, Source.LIVE, degraded=False)
                    self._write_back(write_back, payload)

            else:  # Stage.FALLBACK
                if stale is not None:
                    result = LadderResult(stale.payload, Source.STALE_SNAPSHOT, degraded=True)
                else:
                    result = LadderResult(static_fallback(), Source.FALLBACK, degraded=True)
                outcome = Outcome.SERVED

            trace.append((stage.value, outcome.value))
            stage = next_stage(stage, outcome)

        if result is None:
            msg = f"Ladder {self.name!r} reached {Stage.DONE} without a payload"
            raise RuntimeError(msg)
        result.trace = trace
        result.elapsed_ms = (time.perf_counter() - started) * 1000
        log.debug(
            "Ladder finished",
            facet=self.name,
            source=result.source.value,
            trace=trace,
            ms=round(result.elapsed_ms, 1),
        )
        return result

    # ─── stages ─────────────────────────────────────────────────────

    async def _check_snapshot(
        self,
        read_snapshot: Callable[[], Awaitable[SnapshotEntry | None]] | None,
    ) -> tuple[Outcome, SnapshotEntry | None]:
        if read_snapshot is None:
            return Outcome.MISS, None
        try:
            async with asyncio.timeout(self.snapshot_budget_s):
                entry = await read_snapshot()
        except UpstreamUnavailable:
            raise
        except TimeoutError:
            log.warning("Snapshot read timed out", facet=self.name, budget_s=self.snapshot_budget_s)
            return Outcome.MISS, None
        except Exception as exc:
            log.warning("Snapshot read failed", facet=self.name, err=repr(exc))
            return Outcome.MISS, None

        if entry is None:
            return Outcome.MISS, None
        if entry.is_stale(self.staleness_s, self._clock()):
            return Outcome.STALE, entry
        return Outcome.HIT, entry

    async def _compute_live(self, compute_live: Callable[[], Awaitable[Any]]) -> tuple[Outcome, Any]:
        try:
            async with asyncio.timeout(self.live_budget_s):
                return Outcome.SUCCESS, await compute_live()
        except (UpstreamUnavailable, StatsNotFound):
            raise
        except (TimeoutError, StatsTimeout):
            log.warning("Live aggregation timed out", facet=self.name, budget_s=self.live_budget_s)
            return Outcome.TIMEOUT, None
        except Exception:
            log.exception("Live aggregation failed", facet=self.name)
            return Outcome.FAILURE, None

    def _write_back(self, write_back: Callable[[Any], None] | None, payload: Any) -> None:
        if write_back is None:
            return
        try:
            write_back(payload)
        except Exception as exc:
            log.warning("Write-back could not be scheduled", facet=self.name, err=repr(exc))
