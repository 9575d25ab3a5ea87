import asyncio

import pytest

from estate_harvest.orchestrator.jobs import AttemptPolicy, ItemJob
from estate_harvest.orchestrator.queue import JobQueue
from estate_harvest.orchestrator.quiescence import QuiescenceTimeout, wait_for_quiescence


def _queue(tmp_path, name):
    return JobQueue(name, path=tmp_path / f"{name}.jsonl")


def test_empty_queues_are_quiescent_on_first_poll(tmp_path):
    queues = [_queue(tmp_path, "pages"), _queue(tmp_path, "items")]
    assert asyncio.run(wait_for_quiescence(queues, interval=0.01)) == 1


def test_job_in_retry_backoff_is_not_drained(tmp_path):
    queue = _queue(tmp_path, "items")

    async def scenario():
        await queue.enqueue(ItemJob("etagi/buy", "https://a/1"), AttemptPolicy(base_delay=60))
        await queue.fail(await queue.lease(), "timeout")
        await wait_for_quiescence([queue], interval=0.01, timeout=0.05)

    with pytest.raises(QuiescenceTimeout) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.depths[0].delayed == 1


def test_active_job_blocks_until_acked(tmp_path):
    queue = _queue(tmp_path, "items")

    async def scenario():
        await queue.enqueue(ItemJob("etagi/buy", "https://a/1"))
        job = await queue.lease()

        async def finish_later():
            await asyncio.sleep(0.05)
            await queue.ack(job)

        finisher = asyncio.create_task(finish_later())
        polls = await wait_for_quiescence([queue], interval=0.01, timeout=2.0)
        await finisher
        return polls

    assert asyncio.run(scenario()) > 1


def test_dead_jobs_do_not_block_quiescence(tmp_path):
    queue = _queue(tmp_path, "items")

    async def scenario():
        await queue.enqueue(ItemJob("etagi/buy", "https://a/1"), AttemptPolicy(max_attempts=1))
        await queue.fail(await queue.lease(), "gone")
        return await wait_for_quiescence([queue], interval=0.01, timeout=0.5)

    assert asyncio.run(scenario()) == 1


def test_custom_sleep_is_used_between_polls(tmp_path):
    queue = _queue(tmp_path, "pages")
    slept = []

    async def scenario():
        await queue.enqueue(ItemJob("etagi/buy", "https://a/1"))

        async def fake_sleep(seconds):
            slept.append(seconds)
            job = await queue.lease()
            await queue.ack(job)

        return await wait_for_quiescence([queue], interval=2.0, sleep=fake_sleep)

    assert asyncio.run(scenario()) == 2
    assert slept == [2.0]
