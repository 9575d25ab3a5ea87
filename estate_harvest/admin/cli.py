"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from estate_harvest.admin.status import dead_jobs, queue_status, summarise_runs
from estate_harvest.errors import ConfigError
from estate_harvest.observability.log import configure_logging
from estate_harvest.orchestrator.queue import QueueBroker
from estate_harvest.orchestrator.target_loader import CrawlTarget, load_targets


def cmd_status(args: argparse.Namespace) -> None:
    targets = load_targets(Path(args.targets))
    broker = QueueBroker(Path(args.queues))
    queues = asyncio.run(queue_status(broker, targets))
    runs = summarise_runs(Path(args.manifests))
    summary = [{**row, "last_run": runs.get(str(row["target"]))} for row in queues]
    print(json.dumps(summary, indent=2, default=str))


def cmd_inspect_dead(args: argparse.Namespace) -> None:
    broker = QueueBroker(Path(args.queues))
    names = broker.names()
    if args.queue:
        names = [name for name in names if name == args.queue]
    print(json.dumps(asyncio.run(dead_jobs(broker, names)), indent=2, default=str))


def match_target(url: str, targets: List[CrawlTarget]) -> Optional[CrawlTarget]:
    """Pick the target whose URL template shares the host and longest path prefix with ``url``."""
    parsed = urlparse(url)
    best: Optional[CrawlTarget] = None
    best_score = -1
    for target in targets:
        template = urlparse(target.url_template.replace("{page}", "1"))
        if template.netloc != parsed.netloc:
            continue
        prefix = template.path.split("/page/")[0].rstrip("/")
        score = len(prefix) if parsed.path.startswith(prefix) else 0
        if score > best_score:
            best, best_score = target, score
    return best


def cmd_explain(args: argparse.Namespace) -> None:
    url = args.url
    targets = load_targets(Path(args.targets))
    matched = match_target(url, targets)
    if matched is None:
        print(json.dumps({"url": url, "matched": False}))
        return
    explanation = {
        "url": url,
        "matched": True,
        "target": matched.target_id,
        "page_limit": matched.page_limit,
        "rules_path": str(matched.rules_path),
    }
    print(json.dumps(explanation, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="estate_harvest.admin.cli", description="Administration commands")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show queue depths and the last cycle per target")
    status.add_argument("--targets", default="config/targets.csv")
    status.add_argument("--queues", default="data/queues")
    status.add_argument("--manifests", default="data/manifests")

    dead = sub.add_parser("inspect-dead", help="List jobs that exhausted their attempts")
    dead.add_argument("--queues", default="data/queues")
    dead.add_argument("--queue", help="Restrict to one queue name")

    explain = sub.add_parser("explain", help="Explain which target and rules handle a URL")
    explain.add_argument("--url", required=True)
    explain.add_argument("--targets", default="config/targets.csv")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "status":
            cmd_status(args)
            return
        if args.command == "inspect-dead":
            cmd_inspect_dead(args)
            return
        if args.command == "explain":
            cmd_explain(args)
            return
    except ConfigError as exc:
        raise SystemExit(str(exc))


if __name__ == "__main__":
    main()
