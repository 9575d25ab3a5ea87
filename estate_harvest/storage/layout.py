"""Path helpers for queue, store and report locations under the data root."""
from __future__ import annotations

from pathlib import Path


class DataLayout:
    """Computes structured output paths inside the data root."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.queues = root / "queues"
        self.manifests = root / "manifests"
        self.metrics = root / "metrics"
        self.store_dir = root / "store"
        self.index_dir = root / "index"
        for path in (self.queues, self.manifests, self.metrics, self.store_dir):
            path.mkdir(parents=True, exist_ok=True)

    def listings_sqlite(self) -> Path:
        """Return the SQLite file shared by all targets."""
        return self.store_dir / "listings.db"

    def manifest_path(self, cycle_id: str) -> Path:
        return self.manifests / f"run-{cycle_id}.json"

    def metrics_path(self, cycle_id: str) -> Path:
        return self.metrics / f"cycle_{cycle_id}.json"
