"""Administrative status helpers."""
from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Sequence

import orjson

from estate_harvest.orchestrator.queue import QueueBroker, item_queue_name, page_queue_name
from estate_harvest.orchestrator.target_loader import CrawlTarget


async def queue_status(broker: QueueBroker, targets: Sequence[CrawlTarget]) -> List[Dict[str, object]]:
    """Report page and item queue depths for each target."""
    rows: List[Dict[str, object]] = []
    for target in targets:
        row: Dict[str, object] = {"target": target.target_id}
        for label, name in (("pages", page_queue_name(target.target_id)), ("items", item_queue_name(target.target_id))):
            row[label] = asdict(await broker.queue(name).depth())
        rows.append(row)
    return rows


async def dead_jobs(broker: QueueBroker, names: Sequence[str]) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for name in names:
        for job in await broker.queue(name).dead_jobs():
            rows.append({
                "queue": name,
                "job_id": job.job_id,
                "attempts": job.attempts,
                "error": job.last_error,
                "payload": job.payload,
            })
    return rows


def load_manifests(manifest_dir: Path) -> List[Dict[str, object]]:
    """Read cycle manifests newest first, skipping unreadable files."""
    manifests: List[Dict[str, object]] = []
    if not manifest_dir.exists():
        return manifests
    for path in sorted(manifest_dir.glob("run-*.json"), reverse=True):
        try:
            payload = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError:
            continue
        payload["__path__"] = str(path)
        manifests.append(payload)
    return manifests


def summarise_runs(manifest_dir: Path) -> Dict[str, Dict[str, object]]:
    """Latest manifest summary per target."""
    latest: Dict[str, Dict[str, object]] = {}
    for manifest in load_manifests(manifest_dir):
        target = str(manifest.get("target", ""))
        if not target or target in latest:
            continue
        latest[target] = {
            "cycle_id": manifest.get("cycle_id"),
            "status": manifest.get("status"),
            "finished_at": manifest.get("finished_at"),
            "listings_upserted": manifest.get("listings_upserted", 0),
            "dead_jobs": len(manifest.get("dead_jobs", [])),
            "evicted_records": manifest.get("evicted_records", 0),
        }
    return latest
