import asyncio

import pytest

from conftest import etagi_target
from estate_harvest.observability.metrics import MetricsRegistry
from estate_harvest.orchestrator.coordinator import CrawlCoordinator, CycleState
from estate_harvest.orchestrator.jobs import AttemptPolicy
from estate_harvest.orchestrator.queue import JobQueue


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _coordinator(tmp_path, target, state, sleep):
    queue = JobQueue("etagi-buy-pages", path=tmp_path / "pages.jsonl")
    coordinator = CrawlCoordinator(
        target=target,
        queue=queue,
        state=state,
        policy=AttemptPolicy(),
        metrics=MetricsRegistry(),
        delay_bounds=(2.0, 5.0),
        sleep=sleep,
    )
    return coordinator, queue


def test_enqueues_every_page_up_to_limit(tmp_path):
    target = etagi_target(page_limit=4)
    state = CycleState(target=target, cycle_id="c1")
    sleep = RecordingSleep()
    coordinator, queue = _coordinator(tmp_path, target, state, sleep)

    count = asyncio.run(coordinator.run())

    assert count == 4
    assert state.pages_enqueued == 4
    pages = [job.payload["page_number"] for job in queue.snapshot()]
    assert pages == [1, 2, 3, 4]
    assert len(sleep.delays) == 3
    assert all(2.0 <= delay <= 5.0 for delay in sleep.delays)


def test_stops_once_end_of_results_is_signalled(tmp_path):
    target = etagi_target(page_limit=10)
    state = CycleState(target=target, cycle_id="c1")
    sleep = RecordingSleep()
    coordinator, queue = _coordinator(tmp_path, target, state, sleep)

    async def signal_after_second_page(seconds):
        sleep.delays.append(seconds)
        if len(sleep.delays) == 2:
            state.signal_end_of_results(2)

    coordinator._sleep = signal_after_second_page
    count = asyncio.run(coordinator.run())

    assert count == 2
    assert [job.payload["page_number"] for job in queue.snapshot()] == [1, 2]


def test_end_of_results_keeps_lowest_page():
    state = CycleState(target=etagi_target(), cycle_id="c1")
    state.signal_end_of_results(5)
    state.signal_end_of_results(3)
    state.signal_end_of_results(4)
    assert state.end_of_results_page == 3
    assert state.past_end(4)
    assert not state.past_end(3)


def test_rerun_does_not_duplicate_pending_pages(tmp_path):
    target = etagi_target(page_limit=2)
    state = CycleState(target=target, cycle_id="c1")
    coordinator, queue = _coordinator(tmp_path, target, state, RecordingSleep())
    asyncio.run(coordinator.run())
    assert asyncio.run(coordinator.run()) == 0
    assert len(queue.snapshot()) == 2


def test_rejects_inverted_delay_bounds(tmp_path):
    target = etagi_target()
    with pytest.raises(ValueError):
        CrawlCoordinator(
            target=target,
            queue=JobQueue("q", path=tmp_path / "q.jsonl"),
            state=CycleState(target=target, cycle_id="c1"),
            policy=AttemptPolicy(),
            metrics=MetricsRegistry(),
            delay_bounds=(5.0, 2.0),
        )
