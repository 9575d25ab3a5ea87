"""Queue consumers for listing index pages and listing detail pages."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from estate_harvest.errors import BrokerError, StorageError, TransientFetchError
from estate_harvest.fetch.session import BrowserSessionManager
from estate_harvest.observability.metrics import MetricsRegistry
from estate_harvest.observability.tracing import job_context, log_job_failure, span
from estate_harvest.orchestrator.coordinator import CycleState
from estate_harvest.orchestrator.jobs import AttemptPolicy, ItemJob, Job, PageJob, utcnow
from estate_harvest.orchestrator.queue import JobQueue
from estate_harvest.orchestrator.scheduler import item_job_id
from estate_harvest.parse.sites import ExtractionRules
from estate_harvest.storage.index import ListingIndex
from estate_harvest.storage.models import ListingRecord
from estate_harvest.storage.store import ListingStore

LOGGER = structlog.get_logger(__name__)


class QueueWorker:
    """Leases one job at a time from a queue until told to stop.

    Subclasses implement :meth:`handle`. A raised error fails the job so the
    queue schedules a retry or declares it dead. Broker, store and index errors
    are not job failures: they stop the worker and abort the cycle.
    """

    kind = "worker"

    def __init__(
        self,
        *,
        queue: JobQueue,
        sessions: BrowserSessionManager,
        metrics: MetricsRegistry,
        visibility_timeout: float = 300.0,
        poll_interval: float = 1.0,
        job_timeout: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.sessions = sessions
        self.metrics = metrics
        self._visibility_timeout = visibility_timeout
        self._poll_interval = poll_interval
        self._job_timeout = job_timeout
        self._deadline: Optional[float] = None
        self.processed = 0

    async def handle(self, job: Job) -> None:
        raise NotImplementedError

    def recreates_session_on(self, error: BaseException) -> bool:
        return True

    def attempt_deadline(self):
        """Timeout scope for the running attempt.

        The clock starts the first time the scope is entered, which workers do
        only once they hold a browser, so waiting for the shared session is not
        charged against the job.
        """
        if not self._job_timeout:
            return asyncio.timeout(None)
        if self._deadline is None:
            self._deadline = asyncio.get_running_loop().time() + self._job_timeout
        return asyncio.timeout_at(self._deadline)

    async def run(self, stop: asyncio.Event) -> None:
        LOGGER.info("worker_started", worker=self.kind, queue=self.queue.name)
        while not stop.is_set():
            job = await self.queue.lease(visibility_timeout=self._visibility_timeout)
            if job is None:
                await asyncio.sleep(self._poll_interval)
                continue
            await self.process(job)
        LOGGER.info("worker_stopped", worker=self.kind, queue=self.queue.name, processed=self.processed)

    async def process(self, job: Job) -> None:
        """Run one leased job to ack or failure."""
        with job_context(job_id=job.job_id, queue=self.queue.name, attempt=job.attempts):
            self._deadline = None
            try:
                await self.handle(job)
            except (BrokerError, StorageError):
                raise
            except Exception as exc:
                await self._on_failure(job, exc)
                return
            await self.queue.ack(job)
            self.processed += 1

    async def _on_failure(self, job: Job, error: Exception) -> None:
        reason = f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
        self.metrics.incr("job_failures")
        if self.recreates_session_on(error):
            try:
                await self.sessions.recreate(reason)
            except TransientFetchError as exc:
                LOGGER.error("session_recreate_failed", error=str(exc))
        status = await self.queue.fail(job, reason)
        if status == "dead":
            self.metrics.incr("jobs_dead")
        log_job_failure(queue=self.queue.name, job_id=job.job_id, attempt=job.attempts, status=status, reason=reason)


class PageWorker(QueueWorker):
    """Renders listing index pages and fans their links out as item jobs."""

    kind = "page"

    def __init__(
        self,
        *,
        item_queue: JobQueue,
        rules: ExtractionRules,
        state: CycleState,
        policy: AttemptPolicy,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.item_queue = item_queue
        self.rules = rules
        self.state = state
        self.policy = policy

    async def handle(self, job: Job) -> None:
        page_job = PageJob(**job.payload)
        if self.state.past_end(page_job.page_number):
            self.metrics.incr("pages_skipped")
            LOGGER.info("page_skipped_past_end", page=page_job.page_number, end_page=self.state.end_of_results_page)
            return
        with span(name="render_listing", url=page_job.page_url):
            async with self.sessions.acquire() as browser:
                async with self.attempt_deadline():
                    page = await browser.render(page_job.page_url, self.rules.listing_render_options())
        self.metrics.incr("pages_fetched")

        links = [] if self.rules.is_end_of_results(page) else self.rules.list_item_links(page)
        if not links:
            self.state.signal_end_of_results(page_job.page_number)
            self.metrics.incr("end_of_results")
            LOGGER.info("end_of_results", page=page_job.page_number, url=page_job.page_url)
            return

        created = 0
        for link in links:
            item = ItemJob(target_id=page_job.target_id, link=link)
            if await self.item_queue.enqueue(item, self.policy, job_id=item_job_id(link)) is None:
                self.metrics.incr("items_duplicate")
                continue
            created += 1
        self.state.items_enqueued += created
        self.metrics.incr("items_enqueued", created)
        LOGGER.info("page_job_done", page=page_job.page_number, links=len(links), enqueued=created)


class ItemWorker(QueueWorker):
    """Extracts one listing per job and writes it to the store and the index."""

    kind = "item"

    def __init__(
        self,
        *,
        rules: ExtractionRules,
        state: CycleState,
        store: ListingStore,
        index: ListingIndex,
        clock: Callable = utcnow,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.rules = rules
        self.state = state
        self.store = store
        self.index = index
        self._clock = clock

    def recreates_session_on(self, error: BaseException) -> bool:
        return isinstance(error, (TransientFetchError, asyncio.TimeoutError))

    async def handle(self, job: Job) -> None:
        item_job = ItemJob(**job.payload)
        target = self.state.target
        with span(name="render_detail", url=item_job.link):
            async with self.sessions.acquire() as browser:
                async with self.attempt_deadline():
                    page = await browser.render(item_job.link, self.rules.detail_render_options())
        raw = self.rules.extract_record(page)
        record = ListingRecord.from_raw(
            raw,
            link=item_job.link,
            site=target.site,
            listing_type=target.listing_type,
            checked_at=self._clock(),
        )
        async with self.attempt_deadline():
            await self.store.upsert_async(record)
            await self.index.upsert_async(record)
        self.state.listings_upserted += 1
        self.metrics.incr("items_upserted")
        self.metrics.incr("index_upserts")
        LOGGER.info("item_upserted", link=record.link, price=record.price)
