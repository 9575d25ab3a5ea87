"""Cron-driven loop that re-runs crawl cycles."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from croniter import croniter

from estate_harvest.orchestrator.cycle import CycleReport, HarvestRuntime, run_targets
from estate_harvest.orchestrator.jobs import utcnow
from estate_harvest.orchestrator.target_loader import CrawlTarget

LOGGER = structlog.get_logger(__name__)

Runner = Callable[[Sequence[CrawlTarget], HarvestRuntime], Awaitable[List[CycleReport]]]


def next_run_after(cron: str, now: datetime) -> datetime:
    return croniter(cron, now).get_next(datetime)


def seconds_until_next(cron: str, now: datetime) -> float:
    return max(0.0, (next_run_after(cron, now) - now).total_seconds())


async def run_schedule_loop(
    settings: Dict[str, object],
    *,
    targets: Sequence[CrawlTarget],
    runtime: HarvestRuntime,
    interval_seconds: Optional[float] = None,
    ticks: Optional[int] = None,
    runner: Runner = run_targets,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> List[CycleReport]:
    """Run all targets once per tick.

    Between ticks the loop sleeps for ``interval_seconds`` when given,
    otherwise until the next ``[scheduler] cron`` fire time. A cycle is never
    interrupted; a tick that overruns simply delays the next one.
    """
    cron = str(settings.get("scheduler", {}).get("cron", "0 */6 * * *"))
    if not croniter.is_valid(cron):
        raise ValueError(f"invalid cron expression: {cron}")
    if not targets:
        LOGGER.warning("schedule_no_targets")
        return []
    reports: List[CycleReport] = []
    tick = 0
    while ticks is None or tick < ticks:
        LOGGER.info("schedule_tick", tick=tick, targets=[target.target_id for target in targets])
        reports.extend(await runner(targets, runtime))
        tick += 1
        if ticks is not None and tick >= ticks:
            break
        delay = interval_seconds if interval_seconds is not None else seconds_until_next(cron, clock())
        LOGGER.info("schedule_sleep", seconds=delay)
        await sleep(delay)
    return reports
