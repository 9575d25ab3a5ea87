import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from qdrant_client import QdrantClient

from estate_harvest.errors import NavigationError
from estate_harvest.fetch.session import RenderOptions
from estate_harvest.fetch.snapshot import RenderedPage
from estate_harvest.orchestrator.cycle import CrawlSettings, HarvestRuntime
from estate_harvest.orchestrator.jobs import AttemptPolicy
from estate_harvest.orchestrator.queue import QueueBroker
from estate_harvest.orchestrator.target_loader import CrawlTarget
from estate_harvest.quality.validate import RecordValidator
from estate_harvest.storage.index import ListingIndex
from estate_harvest.storage.layout import DataLayout
from estate_harvest.storage.store import ListingStore

ROOT = Path(__file__).resolve().parent.parent
FIXTURES = ROOT / "tests" / "fixtures" / "html"
RULES = ROOT / "config" / "rules"
SCHEMA = ROOT / "config" / "schemas" / "listing.schema.json"


def fixture_html(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeSession:
    """Browser stand-in that serves canned HTML from its site."""

    def __init__(self, site: "FakeSite") -> None:
        self._site = site
        self.running = False

    async def start(self) -> None:
        if self._site.fail_launch:
            raise RuntimeError("chromium crashed on launch")
        self.running = True
        self._site.launched += 1

    async def close(self) -> None:
        self.running = False
        self._site.closed += 1

    async def render(self, url: str, options: RenderOptions) -> RenderedPage:
        self._site.renders.append(url)
        self._site.active += 1
        self._site.max_active = max(self._site.max_active, self._site.active)
        try:
            if self._site.stalls[url]:
                await asyncio.sleep(self._site.stalls[url].pop(0))
            if self._site.failures[url]:
                raise self._site.failures[url].pop(0)
            if url in self._site.always_fail:
                raise NavigationError(url, "net::ERR_CONNECTION_RESET")
            if url not in self._site.pages:
                raise NavigationError(url, "404")
            await asyncio.sleep(0)
            return RenderedPage(url=url, html=self._site.pages[url], status_code=200)
        finally:
            self._site.active -= 1


class FakeSite:
    def __init__(self) -> None:
        self.pages: Dict[str, str] = {}
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.stalls: Dict[str, List[float]] = defaultdict(list)
        self.always_fail: set = set()
        self.renders: List[str] = []
        self.launched = 0
        self.closed = 0
        self.active = 0
        self.max_active = 0
        self.fail_launch = False

    def serve(self, url: str, html: str) -> None:
        self.pages[url] = html

    def fail_next(self, url: str, error: Exception) -> None:
        self.failures[url].append(error)

    def stall_next(self, url: str, seconds: float) -> None:
        self.stalls[url].append(seconds)

    def factory(self) -> FakeSession:
        return FakeSession(self)


ETAGI_TEMPLATE = "https://almaty.etagi.com/realty/?page={page}"
ETAGI_LINKS = [f"https://almaty.etagi.com/realty/800{n}/" for n in range(1, 6)]


def etagi_target(page_limit: int = 2) -> CrawlTarget:
    return CrawlTarget(
        site="etagi",
        listing_type="buy",
        url_template=ETAGI_TEMPLATE,
        page_limit=page_limit,
        rules_path=RULES / "etagi.yaml",
    )


def serve_etagi(site: FakeSite) -> None:
    """Page 1 lists five listings, page 2 is the "nothing found" page."""
    site.serve(ETAGI_TEMPLATE.format(page=1), fixture_html("etagi_list.html"))
    site.serve(ETAGI_TEMPLATE.format(page=2), fixture_html("etagi_empty.html"))
    detail = fixture_html("etagi_detail.html")
    for link in ETAGI_LINKS:
        site.serve(link, detail)


def make_index() -> ListingIndex:
    return ListingIndex(QdrantClient(location=":memory:"), DeterministicFakeEmbedding(size=16))


def make_runtime(root: Path, site: FakeSite, **overrides) -> HarvestRuntime:
    crawl_options = dict(
        policy=AttemptPolicy(max_attempts=3, base_delay=0.01),
        visibility_timeout=30.0,
        poll_interval=0.01,
        delay_bounds=(0.0, 0.0),
        job_timeout=2.0,
        navigation_timeout=5.0,
        quiescence_interval=0.01,
    )
    crawl_options.update(overrides)
    layout = DataLayout(root / "data")
    return HarvestRuntime(
        layout=layout,
        broker=QueueBroker(layout.queues),
        store=ListingStore(layout.listings_sqlite()),
        index=make_index(),
        crawl=CrawlSettings(**crawl_options),
        session_factory=site.factory,
        validator=RecordValidator(SCHEMA),
    )


@pytest.fixture()
def fake_site() -> FakeSite:
    return FakeSite()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
