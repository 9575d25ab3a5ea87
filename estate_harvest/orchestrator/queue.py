"""Durable named job queues with leases, retries and dead-lettering."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import orjson
import structlog

from estate_harvest.errors import BrokerError
from estate_harvest.orchestrator.jobs import AttemptPolicy, Job, utcnow

LOGGER = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class QueueDepth:
    """Job counts for one queue at a single instant."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    dead: int = 0

    @property
    def drained(self) -> bool:
        return self.waiting == 0 and self.active == 0 and self.delayed == 0


class JobQueue:
    """In-memory queue with JSONL persistence for crash recovery.

    Every mutation rewrites the backing file, so a restarted process picks up
    waiting, delayed and dead jobs where the previous one left them. Jobs that
    were leased when the process died are handed out again once their lease
    expires, which makes delivery at-least-once.
    """

    def __init__(self, name: str, *, path: Path, clock: Clock = utcnow) -> None:
        self.name = name
        self._path = path
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        now = self._clock()
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            job = Job.from_dict(orjson.loads(line))
            if job.status == "active" and job.lease_expires_at and job.lease_expires_at <= now:
                job.release()
            self._jobs[job.job_id] = job

    def _persist(self) -> None:
        try:
            with self._path.open("w", encoding="utf-8") as handle:
                for job in self._jobs.values():
                    handle.write(orjson.dumps(job.to_dict()).decode())
                    handle.write("\n")
        except OSError as exc:
            raise BrokerError(f"cannot persist queue {self.name}: {exc}") from exc

    def _reclaim_expired(self, now: datetime) -> None:
        for job in self._jobs.values():
            if job.status == "active" and job.lease_expires_at and job.lease_expires_at <= now:
                LOGGER.warning("lease_expired", queue=self.name, job_id=job.job_id, attempts=job.attempts)
                job.release()

    async def enqueue(
        self,
        payload: object,
        policy: AttemptPolicy = AttemptPolicy(),
        *,
        job_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Add a job and persist; returns None when ``job_id`` is already pending."""
        data = asdict(payload) if is_dataclass(payload) else dict(payload)  # type: ignore[arg-type]
        async with self._lock:
            if job_id is not None:
                existing = self._jobs.get(job_id)
                if existing is not None and existing.pending:
                    return None
            now = self._clock()
            job = Job(
                job_id=job_id or str(uuid.uuid4()),
                queue=self.name,
                payload=data,
                max_attempts=policy.max_attempts,
                backoff=policy.backoff,
                base_delay=policy.base_delay,
                created_at=now,
                available_at=now,
            )
            self._jobs.pop(job.job_id, None)
            self._jobs[job.job_id] = job
            self._persist()
            return job

    async def lease(self, *, visibility_timeout: float = 300.0) -> Optional[Job]:
        """Lease the oldest runnable job, or return None when nothing is due."""
        async with self._lock:
            now = self._clock()
            self._reclaim_expired(now)
            for job in self._jobs.values():
                runnable = job.status == "waiting" or (job.status == "delayed" and job.available_at <= now)
                if runnable:
                    job.mark_started(visibility_timeout=visibility_timeout, now=now)
                    self._persist()
                    return job
            return None

    async def ack(self, job: Job) -> None:
        """Mark the job complete and drop it from the queue."""
        async with self._lock:
            self._jobs.pop(job.job_id, None)
            self._persist()

    async def fail(self, job: Job, error: BaseException | str) -> str:
        """Record a failed attempt; returns the resulting status (delayed or dead)."""
        async with self._lock:
            current = self._jobs.get(job.job_id, job)
            current.mark_failed(error, now=self._clock())
            self._jobs[current.job_id] = current
            self._persist()
            return current.status

    async def depth(self) -> QueueDepth:
        """Return waiting/active/delayed/dead counts; due delayed jobs count as waiting."""
        async with self._lock:
            now = self._clock()
            counts = {"waiting": 0, "active": 0, "delayed": 0, "dead": 0}
            for job in self._jobs.values():
                if job.status == "delayed" and job.available_at <= now:
                    counts["waiting"] += 1
                elif job.status in counts:
                    counts[job.status] += 1
            return QueueDepth(**counts)

    async def dead_jobs(self) -> List[Job]:
        async with self._lock:
            return [job for job in self._jobs.values() if job.status == "dead"]

    async def purge_dead(self) -> int:
        """Drop dead jobs left behind by a previous cycle."""
        async with self._lock:
            dead = [job_id for job_id, job in self._jobs.items() if job.status == "dead"]
            for job_id in dead:
                del self._jobs[job_id]
            if dead:
                self._persist()
            return len(dead)

    async def clear(self) -> None:
        """Remove all jobs from the queue and truncate the persistence file."""
        async with self._lock:
            self._jobs.clear()
            self._persist()

    def snapshot(self) -> List[Job]:
        return list(self._jobs.values())


class QueueBroker:
    """Hands out named queues persisted side by side under one directory."""

    def __init__(self, root: Path, *, clock: Clock = utcnow) -> None:
        self._root = root
        self._clock = clock
        self._queues: Dict[str, JobQueue] = {}
        self._root.mkdir(parents=True, exist_ok=True)

    def queue(self, name: str) -> JobQueue:
        if name not in self._queues:
            self._queues[name] = JobQueue(name, path=self._root / f"{name}.jsonl", clock=self._clock)
        return self._queues[name]

    def names(self) -> List[str]:
        persisted = {path.stem for path in self._root.glob("*.jsonl")}
        return sorted(persisted | set(self._queues))


def page_queue_name(target_id: str) -> str:
    return f"{target_id.replace('/', '-')}-pages"


def item_queue_name(target_id: str) -> str:
    return f"{target_id.replace('/', '-')}-items"
