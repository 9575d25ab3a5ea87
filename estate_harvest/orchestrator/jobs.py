"""Definitions for queued crawl jobs and their retry lifecycle."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptPolicy:
    """How many times a job may run and how long to wait between failures."""

    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay: float = 5.0

    def delay_for(self, attempts: int) -> float:
        """Return the backoff delay in seconds after ``attempts`` failed runs."""
        if attempts < 1:
            return 0.0
        if self.backoff == "fixed":
            return self.base_delay
        return self.base_delay * (2 ** (attempts - 1))

    @classmethod
    def from_settings(cls, settings: Dict[str, object]) -> "AttemptPolicy":
        queue_cfg = settings.get("queue", {})
        return cls(
            max_attempts=int(queue_cfg.get("max_attempts", 3)),
            backoff=str(queue_cfg.get("backoff", "exponential")),
            base_delay=float(queue_cfg.get("backoff_base_seconds", 5.0)),
        )


@dataclass(frozen=True)
class PageJob:
    """Fetch one listing index page of a target."""

    target_id: str
    page_url: str
    page_number: int


@dataclass(frozen=True)
class ItemJob:
    """Fetch and extract one listing detail page."""

    target_id: str
    link: str


@dataclass
class Job:
    """A unit of work owned by a queue from enqueue until ack or death."""

    job_id: str
    queue: str
    payload: Dict[str, object]
    attempts: int = 0
    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay: float = 5.0
    status: str = "waiting"
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    available_at: datetime = field(default_factory=utcnow)
    lease_expires_at: Optional[datetime] = None

    @property
    def policy(self) -> AttemptPolicy:
        return AttemptPolicy(
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            base_delay=self.base_delay,
        )

    @property
    def pending(self) -> bool:
        return self.status in {"waiting", "delayed", "active"}

    def mark_started(self, *, visibility_timeout: float, now: Optional[datetime] = None) -> None:
        """Transition the job into the leased state."""
        now = now or utcnow()
        self.status = "active"
        self.attempts += 1
        self.lease_expires_at = now + timedelta(seconds=visibility_timeout)

    def mark_failed(self, error: BaseException | str, *, now: Optional[datetime] = None) -> None:
        """Record a failure and either schedule a retry or declare the job dead."""
        now = now or utcnow()
        self.last_error = str(error) or type(error).__name__
        self.lease_expires_at = None
        if self.attempts >= self.max_attempts:
            self.status = "dead"
            return
        self.status = "delayed"
        self.available_at = now + timedelta(seconds=self.policy.delay_for(self.attempts))

    def release(self) -> None:
        """Return a job whose lease expired to the waiting set."""
        self.status = "waiting"
        self.lease_expires_at = None

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        for key, value in list(payload.items()):
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Job":
        data = dict(data)
        for key in ("created_at", "available_at", "lease_expires_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)
