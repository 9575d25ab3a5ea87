"""Browser sessions backed by crawl4ai and the manager that owns them."""
from __future__ import annotations

import asyncio
import contextlib
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Protocol

import structlog
from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from estate_harvest.errors import NavigationError, SessionFatalError
from estate_harvest.fetch.snapshot import RenderedPage
from estate_harvest.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:127.0) Gecko/20100101 Firefox/127.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15",
]


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


@dataclass
class RenderOptions:
    """What to do on a page between navigation and reading its DOM."""

    wait_for: Optional[str] = None
    js_code: List[str] = field(default_factory=list)
    scroll: bool = False
    timeout: float = 60.0
    settle_seconds: float = 0.0


class BrowserSession(Protocol):
    """The browser automation capability the workers depend on."""

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def render(self, url: str, options: RenderOptions) -> RenderedPage: ...


class CrawlSession:
    """A single headless browser driven through crawl4ai."""

    def __init__(self, *, headless: bool = True, user_agent: Optional[str] = None) -> None:
        self._config = BrowserConfig(
            headless=headless,
            user_agent=user_agent or random_user_agent(),
            extra_args=["--no-sandbox", "--disable-setuid-sandbox"],
            verbose=False,
        )
        self._crawler: Optional[AsyncWebCrawler] = None

    async def start(self) -> None:
        crawler = AsyncWebCrawler(config=self._config)
        await crawler.start()
        self._crawler = crawler

    async def close(self) -> None:
        crawler, self._crawler = self._crawler, None
        if crawler is not None:
            await crawler.close()

    async def render(self, url: str, options: RenderOptions) -> RenderedPage:
        """Navigate to ``url`` and return the DOM once the wait condition holds."""
        if self._crawler is None:
            raise SessionFatalError("browser session is not running")
        config = CrawlerRunConfig(
            cache_mode=CacheMode.BYPASS,
            wait_for=f"css:{options.wait_for}" if options.wait_for else None,
            js_code=options.js_code or None,
            scan_full_page=options.scroll,
            page_timeout=int(options.timeout * 1000),
            delay_before_return_html=options.settle_seconds,
            verbose=False,
        )
        try:
            result = await self._crawler.arun(url=url, config=config)
        except asyncio.TimeoutError as exc:
            raise NavigationError(url, "timed out") from exc
        except RuntimeError as exc:
            raise NavigationError(url, str(exc)) from exc
        if not result.success:
            raise NavigationError(url, result.error_message or "render failed")
        return RenderedPage(url=url, html=result.html, status_code=result.status_code)


SessionFactory = Callable[[], BrowserSession]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RECREATING = "recreating"
    CLOSED = "closed"


class BrowserSessionManager:
    """Owns the browser of one target and recreates it after fatal failures.

    In ``shared`` mode one browser serves every job of the target and is held
    by one worker at a time. In ``ephemeral`` mode each acquisition launches a
    fresh browser and closes it afterwards, trading startup cost for isolation.
    """

    def __init__(
        self,
        factory: SessionFactory,
        *,
        mode: str = "shared",
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        if mode not in {"shared", "ephemeral"}:
            raise ValueError(f"unknown session mode: {mode}")
        self._factory = factory
        self._mode = mode
        self._metrics = metrics or MetricsRegistry()
        self._session: Optional[BrowserSession] = None
        self._lock = asyncio.Lock()
        self.state = SessionState.UNINITIALIZED

    @property
    def mode(self) -> str:
        return self._mode

    async def _launch(self) -> BrowserSession:
        session = self._factory()
        try:
            await session.start()
        except Exception as exc:
            raise SessionFatalError(f"browser failed to start: {exc}") from exc
        return session

    async def _ensure_ready(self) -> BrowserSession:
        if self.state == SessionState.CLOSED:
            raise SessionFatalError("session manager is closed")
        if self._session is None:
            self._session = await self._launch()
            self.state = SessionState.READY
            LOGGER.info("browser_session_ready", mode=self._mode)
        return self._session

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[BrowserSession]:
        """Yield a browser for exclusive use by the calling worker."""
        if self._mode == "ephemeral":
            session = await self._launch()
            try:
                yield session
            finally:
                await session.close()
            return
        async with self._lock:
            session = await self._ensure_ready()
            yield session

    async def recreate(self, reason: str) -> None:
        """Tear down the shared browser and launch a replacement."""
        if self._mode == "ephemeral":
            return
        async with self._lock:
            if self.state == SessionState.CLOSED:
                return
            self.state = SessionState.RECREATING
            self._metrics.incr("session_recreations")
            LOGGER.warning("browser_session_recreating", reason=reason)
            old, self._session = self._session, None
            if old is not None:
                try:
                    await old.close()
                except Exception as exc:
                    LOGGER.warning("browser_close_failed", error=str(exc))
            self._session = await self._launch()
            self.state = SessionState.READY

    async def close(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
            self.state = SessionState.CLOSED
            if session is not None:
                await session.close()
