import asyncio
from types import SimpleNamespace

import pytest

from estate_harvest.errors import SessionFatalError
from estate_harvest.fetch.session import BrowserSessionManager, CrawlSession, RenderOptions, SessionState, USER_AGENTS, random_user_agent
from estate_harvest.observability.metrics import MetricsRegistry


def test_shared_session_launches_once_and_is_reused(fake_site):
    manager = BrowserSessionManager(fake_site.factory, mode="shared")
    assert manager.state == SessionState.UNINITIALIZED

    async def scenario():
        async with manager.acquire() as first:
            pass
        async with manager.acquire() as second:
            pass
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert fake_site.launched == 1
    assert manager.state == SessionState.READY


def test_recreate_replaces_browser_and_counts(fake_site):
    metrics = MetricsRegistry()
    manager = BrowserSessionManager(fake_site.factory, mode="shared", metrics=metrics)

    async def scenario():
        async with manager.acquire() as before:
            pass
        await manager.recreate("navigation timeout")
        async with manager.acquire() as after:
            pass
        return before, after

    before, after = asyncio.run(scenario())
    assert before is not after
    assert not before.running
    assert fake_site.launched == 2
    assert metrics.get("session_recreations") == 1
    assert manager.state == SessionState.READY


def test_recreate_before_first_acquire_leaves_session_ready(fake_site):
    manager = BrowserSessionManager(fake_site.factory)
    asyncio.run(manager.recreate("warm start"))
    assert manager.state == SessionState.READY
    assert fake_site.launched == 1


def test_shared_session_is_held_by_one_worker_at_a_time(fake_site):
    fake_site.serve("https://a/1", "<html></html>")
    manager = BrowserSessionManager(fake_site.factory)

    async def use():
        async with manager.acquire() as browser:
            await browser.render("https://a/1", RenderOptions())
            await asyncio.sleep(0.01)
            await browser.render("https://a/1", RenderOptions())

    async def scenario():
        await asyncio.gather(use(), use(), use())

    asyncio.run(scenario())
    assert fake_site.max_active == 1
    assert len(fake_site.renders) == 6


def test_ephemeral_mode_launches_per_acquire(fake_site):
    manager = BrowserSessionManager(fake_site.factory, mode="ephemeral")

    async def scenario():
        for _ in range(3):
            async with manager.acquire():
                pass
        await manager.recreate("ignored")

    asyncio.run(scenario())
    assert fake_site.launched == 3
    assert fake_site.closed == 3


def test_close_prevents_further_use(fake_site):
    manager = BrowserSessionManager(fake_site.factory)

    async def scenario():
        async with manager.acquire():
            pass
        await manager.close()
        async with manager.acquire():
            pass

    with pytest.raises(SessionFatalError):
        asyncio.run(scenario())
    assert manager.state == SessionState.CLOSED
    assert fake_site.closed == 1


def test_launch_failure_is_session_fatal(fake_site):
    fake_site.fail_launch = True
    manager = BrowserSessionManager(fake_site.factory)

    async def scenario():
        async with manager.acquire():
            pass

    with pytest.raises(SessionFatalError, match="failed to start"):
        asyncio.run(scenario())


def test_unknown_mode_is_rejected(fake_site):
    with pytest.raises(ValueError):
        BrowserSessionManager(fake_site.factory, mode="pooled")


def test_random_user_agent_comes_from_pool():
    assert random_user_agent() in USER_AGENTS


class RecordingCrawler:
    def __init__(self):
        self.urls = []

    async def arun(self, url, config):
        self.urls.append(url)
        return SimpleNamespace(success=True, html="<html><body>browser</body></html>", status_code=200, error_message="")


def test_render_requires_a_running_browser_even_for_local_files(tmp_path):
    page = tmp_path / "listing.html"
    page.write_text("<html><body>local</body></html>", encoding="utf-8")

    with pytest.raises(SessionFatalError, match="not running"):
        asyncio.run(CrawlSession().render(page.as_uri(), RenderOptions()))


def test_render_sends_every_url_through_the_browser(tmp_path):
    page = tmp_path / "listing.html"
    page.write_text("<html><body>local</body></html>", encoding="utf-8")
    session = CrawlSession()
    crawler = RecordingCrawler()
    session._crawler = crawler

    rendered = asyncio.run(session.render(page.as_uri(), RenderOptions()))

    assert crawler.urls == [page.as_uri()]
    assert "browser" in rendered.html
    assert "local" not in rendered.html
