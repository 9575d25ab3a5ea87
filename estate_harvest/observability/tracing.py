"""Tracing helpers binding cycle and job context to log lines."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

_LOGGER = structlog.get_logger("estate_harvest.trace")


def set_cycle_context(*, cycle_id: str, target: str) -> None:
    bind_contextvars(cycle_id=cycle_id, target=target)


def clear_cycle_context() -> None:
    unbind_contextvars("cycle_id", "target")


@contextlib.contextmanager
def job_context(*, job_id: str, queue: str, attempt: int) -> Iterator[None]:
    bind_contextvars(job_id=job_id, queue=queue, attempt=attempt)
    try:
        yield
    finally:
        unbind_contextvars("job_id", "queue", "attempt")


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _LOGGER.debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_job_failure(*, queue: str, job_id: str, attempt: int, status: str, reason: str) -> None:
    if status == "dead":
        _LOGGER.error("job_dead", queue=queue, job_id=job_id, attempt=attempt, reason=reason)
    else:
        _LOGGER.warning("job_retry_scheduled", queue=queue, job_id=job_id, attempt=attempt, reason=reason)
