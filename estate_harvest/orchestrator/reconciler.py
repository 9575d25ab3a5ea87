"""Evict listings a finished cycle did not refresh."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from estate_harvest.observability.metrics import MetricsRegistry
from estate_harvest.orchestrator.coordinator import CycleState
from estate_harvest.storage.index import ListingIndex
from estate_harvest.storage.store import ListingStore

LOGGER = structlog.get_logger(__name__)


@dataclass
class ReconcileResult:
    cutoff: datetime
    evicted_records: int = 0
    evicted_index_entries: int = 0
    skipped: bool = False
    reason: Optional[str] = None


class StalenessReconciler:
    """Deletes a target's store records and index entries older than the cycle start.

    The cutoff is the cycle's start time, optionally pushed back by a grace
    period, never the time eviction runs: a listing rewritten by a late retry
    inside the cycle is always newer than the cutoff.
    """

    def __init__(
        self,
        *,
        store: ListingStore,
        index: ListingIndex,
        metrics: MetricsRegistry,
        grace_seconds: float = 0.0,
        requires_items: bool = False,
    ) -> None:
        if grace_seconds < 0:
            raise ValueError("grace_seconds must not be negative")
        self._store = store
        self._index = index
        self._metrics = metrics
        self._grace = timedelta(seconds=grace_seconds)
        self._requires_items = requires_items

    def cutoff_for(self, state: CycleState) -> datetime:
        return state.started_at - self._grace

    async def reconcile(self, state: CycleState) -> ReconcileResult:
        target = state.target
        cutoff = self.cutoff_for(state)
        if self._requires_items and state.listings_upserted == 0:
            LOGGER.warning("reconcile_skipped", reason="no listings refreshed", cutoff=cutoff.isoformat())
            return ReconcileResult(cutoff=cutoff, skipped=True, reason="no listings refreshed")
        records = await self._store.delete_stale_async(
            site=target.site, listing_type=target.listing_type, cutoff=cutoff
        )
        entries = await self._index.delete_stale_async(
            site=target.site, listing_type=target.listing_type, cutoff=cutoff
        )
        self._metrics.incr("records_evicted", records)
        self._metrics.incr("index_evicted", entries)
        LOGGER.info("reconcile_done", cutoff=cutoff.isoformat(), records=records, index_entries=entries)
        return ReconcileResult(cutoff=cutoff, evicted_records=records, evicted_index_entries=entries)
