"""Page enumeration for one crawl cycle of a target."""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Tuple

import structlog

from estate_harvest.observability.metrics import MetricsRegistry
from estate_harvest.orchestrator.jobs import AttemptPolicy, utcnow
from estate_harvest.orchestrator.queue import JobQueue
from estate_harvest.orchestrator.scheduler import page_job_id, plan_page_jobs
from estate_harvest.orchestrator.target_loader import CrawlTarget

LOGGER = structlog.get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class CycleState:
    """Mutable state shared by the coordinator and workers of one cycle."""

    target: CrawlTarget
    cycle_id: str
    started_at: datetime = field(default_factory=utcnow)
    end_of_results_page: Optional[int] = None
    pages_enqueued: int = 0
    items_enqueued: int = 0
    listings_upserted: int = 0

    def signal_end_of_results(self, page_number: int) -> None:
        """Record that ``page_number`` came back empty; keeps the lowest such page."""
        if self.end_of_results_page is None or page_number < self.end_of_results_page:
            self.end_of_results_page = page_number

    def past_end(self, page_number: int) -> bool:
        return self.end_of_results_page is not None and page_number > self.end_of_results_page


class CrawlCoordinator:
    """Enqueues page jobs for pages 1..page_limit, stopping at the end of results.

    Enumeration is speculative: the coordinator never fetches pages itself, it
    only spaces out enqueues by a random delay so the page worker does not hit
    the upstream site in bursts.
    """

    def __init__(
        self,
        *,
        target: CrawlTarget,
        queue: JobQueue,
        state: CycleState,
        policy: AttemptPolicy,
        metrics: MetricsRegistry,
        delay_bounds: Tuple[float, float] = (2.0, 5.0),
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        low, high = delay_bounds
        if low < 0 or high < low:
            raise ValueError(f"invalid delay bounds: {delay_bounds}")
        self._target = target
        self._queue = queue
        self._state = state
        self._policy = policy
        self._metrics = metrics
        self._delay_bounds = delay_bounds
        self._sleep = sleep

    async def run(self) -> int:
        """Enqueue the cycle's page jobs and return how many were added."""
        enqueued = 0
        for job in plan_page_jobs(self._target):
            if self._state.past_end(job.page_number):
                LOGGER.info(
                    "enumeration_stopped",
                    target=self._target.target_id,
                    page=job.page_number,
                    end_of_results_page=self._state.end_of_results_page,
                )
                break
            created = await self._queue.enqueue(job, self._policy, job_id=page_job_id(job))
            if created is not None:
                enqueued += 1
                self._state.pages_enqueued += 1
                self._metrics.incr("pages_enqueued")
                LOGGER.debug("page_enqueued", target=self._target.target_id, page=job.page_number)
            if job.page_number < self._target.page_limit:
                await self._sleep(random.uniform(*self._delay_bounds))
        LOGGER.info("enumeration_done", target=self._target.target_id, pages=enqueued)
        return enqueued
