"""Detect when a set of queues has drained by polling their depth."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from estate_harvest.orchestrator.queue import JobQueue, QueueDepth

LOGGER = structlog.get_logger(__name__)


class QuiescenceTimeout(TimeoutError):
    """Queues still held work when the wait deadline passed."""

    def __init__(self, depths: List[QueueDepth]) -> None:
        super().__init__(f"queues not drained: {depths}")
        self.depths = depths


async def poll_once(queues: Sequence[JobQueue]) -> List[QueueDepth]:
    """Read depths in pipeline order.

    Upstream queues come first: a page job enqueues its item jobs before it is
    acknowledged, so reading the page queue before the item queue cannot miss
    work that is moving between them.
    """
    return [await queue.depth() for queue in queues]


async def wait_for_quiescence(
    queues: Sequence[JobQueue],
    *,
    interval: float = 2.0,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Block until one poll sees every queue with nothing waiting, active or delayed.

    Returns the number of polls taken. A job sitting in retry backoff keeps
    its queue from counting as drained.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    polls = 0
    while True:
        polls += 1
        depths = await poll_once(queues)
        if all(depth.drained for depth in depths):
            LOGGER.info("queues_quiescent", queues=[queue.name for queue in queues], polls=polls)
            return polls
        if deadline is not None and loop.time() >= deadline:
            raise QuiescenceTimeout(depths)
        await sleep(interval)
