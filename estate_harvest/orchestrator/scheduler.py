"""Scheduler helpers for turning a crawl target into page jobs."""
from __future__ import annotations

from typing import Iterator, Optional

from estate_harvest.orchestrator.jobs import PageJob
from estate_harvest.orchestrator.target_loader import CrawlTarget


def plan_page_jobs(target: CrawlTarget, *, limit: Optional[int] = None) -> Iterator[PageJob]:
    """Yield page jobs from page 1 up to the target's page limit."""
    page_limit = target.page_limit if limit is None else min(limit, target.page_limit)
    for page_number in range(1, page_limit + 1):
        yield PageJob(
            target_id=target.target_id,
            page_url=target.page_url(page_number),
            page_number=page_number,
        )


def page_job_id(job: PageJob) -> str:
    return f"page:{job.target_id}:{job.page_number}"


def item_job_id(link: str) -> str:
    return f"item:{link}"
