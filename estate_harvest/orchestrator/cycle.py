"""One crawl cycle per target: enumerate, drain both queues, reconcile, report."""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import orjson
import structlog

from estate_harvest.errors import ConfigError
from estate_harvest.fetch.session import BrowserSessionManager, CrawlSession, SessionFactory
from estate_harvest.observability.metrics import MetricsRegistry, record_duration
from estate_harvest.observability.tracing import clear_cycle_context, set_cycle_context
from estate_harvest.orchestrator.coordinator import CrawlCoordinator, CycleState
from estate_harvest.orchestrator.jobs import AttemptPolicy, utcnow
from estate_harvest.orchestrator.quiescence import wait_for_quiescence
from estate_harvest.orchestrator.queue import JobQueue, QueueBroker, item_queue_name, page_queue_name
from estate_harvest.orchestrator.reconciler import StalenessReconciler
from estate_harvest.orchestrator.target_loader import CrawlTarget
from estate_harvest.orchestrator.workers import ItemWorker, PageWorker
from estate_harvest.parse.sites import rules_for
from estate_harvest.quality.validate import RecordValidator, load_validator
from estate_harvest.storage.index import ListingIndex, build_client, build_embeddings
from estate_harvest.storage.layout import DataLayout
from estate_harvest.storage.store import ListingStore

LOGGER = structlog.get_logger(__name__)

STRATEGIES = {"staged", "concurrent"}


@dataclass
class CrawlSettings:
    """Tunables for a cycle, read from the ``[queue]`` and ``[crawl]`` tables."""

    policy: AttemptPolicy = field(default_factory=AttemptPolicy)
    visibility_timeout: float = 300.0
    poll_interval: float = 1.0
    delay_bounds: tuple = (2.0, 5.0)
    strategy: str = "staged"
    session_mode: str = "shared"
    headless: bool = True
    job_timeout: float = 120.0
    navigation_timeout: float = 60.0
    quiescence_interval: float = 2.0
    eviction_grace: float = 0.0
    reconcile_requires_items: bool = False

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ConfigError(f"Unknown crawl strategy {self.strategy!r}; expected one of {sorted(STRATEGIES)}")

    @classmethod
    def from_settings(cls, settings: Dict[str, object]) -> "CrawlSettings":
        queue_cfg = settings.get("queue", {})
        crawl_cfg = settings.get("crawl", {})
        return cls(
            policy=AttemptPolicy.from_settings(settings),
            visibility_timeout=float(queue_cfg.get("visibility_timeout_seconds", 300)),
            poll_interval=float(queue_cfg.get("poll_interval_seconds", 1.0)),
            delay_bounds=(
                float(crawl_cfg.get("enqueue_delay_min_seconds", 2.0)),
                float(crawl_cfg.get("enqueue_delay_max_seconds", 5.0)),
            ),
            strategy=str(crawl_cfg.get("strategy", "staged")),
            session_mode=str(crawl_cfg.get("session_mode", "shared")),
            headless=bool(crawl_cfg.get("headless", True)),
            job_timeout=float(crawl_cfg.get("job_timeout_seconds", 120)),
            navigation_timeout=float(crawl_cfg.get("navigation_timeout_seconds", 60)),
            quiescence_interval=float(crawl_cfg.get("quiescence_interval_seconds", 2.0)),
            eviction_grace=float(crawl_cfg.get("eviction_grace_seconds", 0)),
            reconcile_requires_items=bool(crawl_cfg.get("reconcile_requires_items", False)),
        )


@dataclass
class HarvestRuntime:
    """Long-lived collaborators shared by every cycle in the process."""

    layout: DataLayout
    broker: QueueBroker
    store: ListingStore
    index: ListingIndex
    crawl: CrawlSettings
    session_factory: SessionFactory
    validator: Optional[RecordValidator] = None
    clock: Callable[[], datetime] = utcnow

    @classmethod
    def from_settings(
        cls,
        settings: Dict[str, object],
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> "HarvestRuntime":
        app_cfg = settings.get("app", {})
        layout = DataLayout(Path(app_cfg.get("data_root", "data")))
        crawl = CrawlSettings.from_settings(settings)
        schemas_dir = app_cfg.get("schemas_dir")
        validator = load_validator(Path(schemas_dir) if schemas_dir else None)
        index = ListingIndex(
            build_client(settings),
            build_embeddings(settings),
            collection=str(settings.get("index", {}).get("collection", "listings")),
        )
        return cls(
            layout=layout,
            broker=QueueBroker(layout.queues),
            store=ListingStore(layout.listings_sqlite()),
            index=index,
            crawl=crawl,
            session_factory=session_factory or (lambda: CrawlSession(headless=crawl.headless)),
            validator=validator,
        )


@dataclass
class CycleReport:
    cycle_id: str
    target: str
    started_at: str
    finished_at: Optional[str] = None
    status: str = "running"
    pages_enqueued: int = 0
    items_enqueued: int = 0
    listings_upserted: int = 0
    end_of_results_page: Optional[int] = None
    dead_jobs: List[Dict[str, object]] = field(default_factory=list)
    reconcile_cutoff: Optional[str] = None
    reconcile_skipped: bool = False
    evicted_records: int = 0
    evicted_index_entries: int = 0
    error: Optional[str] = None
    metrics: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def new_cycle_id(target: CrawlTarget, started_at: datetime) -> str:
    return f"{target.site}-{target.listing_type}-{started_at.strftime('%Y%m%dT%H%M%S%f')}"


async def _drain(queues: Sequence[JobQueue], workers: Sequence[asyncio.Task], *, interval: float) -> None:
    """Wait for quiescence, surfacing a worker that died before the queues drained."""
    waiter = asyncio.create_task(wait_for_quiescence(queues, interval=interval))
    done, _ = await asyncio.wait({waiter, *workers}, return_when=asyncio.FIRST_COMPLETED)
    if waiter in done:
        waiter.result()
        return
    waiter.cancel()
    for task in done:
        task.result()
    raise RuntimeError("worker exited before its queue drained")


async def _stop_workers(stops: Sequence[asyncio.Event], tasks: Sequence[asyncio.Task]) -> None:
    for stop in stops:
        stop.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            LOGGER.error("worker_failed", error=str(result))


async def _collect_dead(queues: Sequence[JobQueue]) -> List[Dict[str, object]]:
    dead: List[Dict[str, object]] = []
    for queue in queues:
        for job in await queue.dead_jobs():
            LOGGER.error("dead_job", queue=queue.name, job_id=job.job_id, attempts=job.attempts, error=job.last_error)
            dead.append({"queue": queue.name, "job_id": job.job_id, "attempts": job.attempts, "error": job.last_error})
    return dead


def _write_manifest(layout: DataLayout, report: CycleReport) -> Path:
    path = layout.manifest_path(report.cycle_id)
    path.write_bytes(orjson.dumps(report.to_dict(), option=orjson.OPT_INDENT_2))
    return path


async def run_cycle(target: CrawlTarget, runtime: HarvestRuntime) -> CycleReport:
    """Run one full cycle for ``target`` and return its report.

    Broker failures abort the cycle before reconciliation; the report is still
    written with ``status = "failed"`` and the error re-raised.
    """
    crawl = runtime.crawl
    metrics = MetricsRegistry()
    started_at = runtime.clock()
    state = CycleState(target=target, cycle_id=new_cycle_id(target, started_at), started_at=started_at)
    report = CycleReport(cycle_id=state.cycle_id, target=target.target_id, started_at=started_at.isoformat())
    set_cycle_context(cycle_id=state.cycle_id, target=target.target_id)
    LOGGER.info("cycle_started", strategy=crawl.strategy, session_mode=crawl.session_mode, page_limit=target.page_limit)

    page_queue = runtime.broker.queue(page_queue_name(target.target_id))
    item_queue = runtime.broker.queue(item_queue_name(target.target_id))
    sessions = BrowserSessionManager(runtime.session_factory, mode=crawl.session_mode, metrics=metrics)
    stops: List[asyncio.Event] = []
    tasks: List[asyncio.Task] = []
    try:
        purged = await page_queue.purge_dead() + await item_queue.purge_dead()
        if purged:
            LOGGER.info("dead_jobs_purged", count=purged)
        rules = rules_for(target, validator=runtime.validator, navigation_timeout=crawl.navigation_timeout)
        common = dict(
            sessions=sessions,
            metrics=metrics,
            visibility_timeout=crawl.visibility_timeout,
            poll_interval=crawl.poll_interval,
            job_timeout=crawl.job_timeout,
        )
        page_worker = PageWorker(
            queue=page_queue, item_queue=item_queue, rules=rules, state=state, policy=crawl.policy, **common
        )
        item_worker = ItemWorker(
            queue=item_queue,
            rules=rules,
            state=state,
            store=runtime.store,
            index=runtime.index,
            clock=runtime.clock,
            **common,
        )

        def start(worker) -> asyncio.Task:
            stop = asyncio.Event()
            stops.append(stop)
            task = asyncio.create_task(worker.run(stop), name=f"{target.target_id}-{worker.kind}")
            tasks.append(task)
            return task

        coordinator = CrawlCoordinator(
            target=target,
            queue=page_queue,
            state=state,
            policy=crawl.policy,
            metrics=metrics,
            delay_bounds=crawl.delay_bounds,
        )
        with record_duration(metrics, "cycle_duration_ms"):
            start(page_worker)
            if crawl.strategy == "concurrent":
                start(item_worker)
            await coordinator.run()
            await _drain([page_queue], tasks, interval=crawl.quiescence_interval)
            if crawl.strategy == "staged":
                start(item_worker)
            await _drain([page_queue, item_queue], tasks, interval=crawl.quiescence_interval)
            await _stop_workers(stops, tasks)
            tasks.clear()

            report.dead_jobs = await _collect_dead([page_queue, item_queue])
            reconciler = StalenessReconciler(
                store=runtime.store,
                index=runtime.index,
                metrics=metrics,
                grace_seconds=crawl.eviction_grace,
                requires_items=crawl.reconcile_requires_items,
            )
            result = await reconciler.reconcile(state)
        report.reconcile_cutoff = result.cutoff.isoformat()
        report.reconcile_skipped = result.skipped
        report.evicted_records = result.evicted_records
        report.evicted_index_entries = result.evicted_index_entries
        report.status = "completed"
    except Exception as exc:
        report.status = "failed"
        report.error = f"{type(exc).__name__}: {exc}"
        LOGGER.exception("cycle_failed")
        raise
    finally:
        if tasks:
            await _stop_workers(stops, tasks)
        await sessions.close()
        report.finished_at = runtime.clock().isoformat()
        report.pages_enqueued = state.pages_enqueued
        report.items_enqueued = state.items_enqueued
        report.listings_upserted = state.listings_upserted
        report.end_of_results_page = state.end_of_results_page
        report.metrics = metrics.snapshot()
        _write_manifest(runtime.layout, report)
        metrics.export(path=runtime.layout.metrics_path(state.cycle_id), cycle_id=state.cycle_id)
        LOGGER.info(
            "cycle_finished",
            status=report.status,
            listings=report.listings_upserted,
            dead=len(report.dead_jobs),
            evicted=report.evicted_records,
        )
        clear_cycle_context()
    return report


async def run_targets(targets: Sequence[CrawlTarget], runtime: HarvestRuntime) -> List[CycleReport]:
    """Run several targets concurrently; a failing target does not cancel the rest."""

    async def _one(target: CrawlTarget) -> CycleReport:
        return await run_cycle(target, runtime)

    outcomes = await asyncio.gather(*(_one(target) for target in targets), return_exceptions=True)
    reports: List[CycleReport] = []
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, BaseException):
            LOGGER.error("target_failed", target=target.target_id, error=str(outcome))
            reports.append(
                CycleReport(
                    cycle_id="",
                    target=target.target_id,
                    started_at="",
                    status="failed",
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            )
            continue
        reports.append(outcome)
    return reports
