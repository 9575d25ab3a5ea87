"""Command-line entrypoints for the listing harvester."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import tomllib
from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop is unavailable on Windows
    uvloop = None

from estate_harvest.admin.status import queue_status, summarise_runs
from estate_harvest.errors import ConfigError
from estate_harvest.observability.log import configure_logging
from estate_harvest.orchestrator.cycle import HarvestRuntime, run_targets
from estate_harvest.orchestrator.queue import QueueBroker
from estate_harvest.orchestrator.schedule_loop import run_schedule_loop
from estate_harvest.orchestrator.scheduler import page_job_id, plan_page_jobs
from estate_harvest.orchestrator.target_loader import CrawlTarget, load_targets, select_targets, validate_targets

DEFAULT_SETTINGS = Path("config/settings.toml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file."""
    with path.open("rb") as handle:
        return tomllib.load(handle)


def env_page_limit() -> Optional[int]:
    """Default page limit from ``PAGE_LIMIT`` for rows that leave it blank."""
    raw = os.getenv("PAGE_LIMIT")
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"PAGE_LIMIT must be a positive integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"PAGE_LIMIT must be a positive integer, got {raw!r}")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="estate-harvest", description="Real-estate listing harvester")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS), help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-targets", help="Write the default target registry")

    crawl = sub.add_parser("crawl", help="Run one crawl cycle per selected target")
    crawl.add_argument("--target", action="append", dest="targets", help="Target id such as krisha/buy; repeatable")
    crawl.add_argument("--all", action="store_true", help="Crawl every enabled target")
    crawl.add_argument("--dry-run", action="store_true", help="Print planned page jobs without executing")

    schedule = sub.add_parser("schedule", help="Run cycles repeatedly on the configured cron")
    schedule.add_argument("--ticks", type=int, help="Number of iterations to execute")
    schedule.add_argument("--interval", type=float, help="Seconds between ticks instead of the cron")

    status = sub.add_parser("status", help="Summarise queues and cycle manifests")
    status.add_argument("--target", action="append", dest="targets")

    sub.add_parser("validate-targets", help="Validate targets.csv and associated rule files")

    return parser


def _targets(settings: Dict[str, object], wanted: Optional[List[str]]) -> List[CrawlTarget]:
    csv_path = Path(settings["app"].get("targets_csv", "config/targets.csv"))
    return select_targets(load_targets(csv_path, default_page_limit=env_page_limit()), wanted)


def _dry_run(targets: List[CrawlTarget]) -> None:
    summary = [
        {
            "job_id": page_job_id(job),
            "target": job.target_id,
            "page": job.page_number,
            "url": job.page_url,
            "rules_path": str(target.rules_path),
        }
        for target in targets
        for job in plan_page_jobs(target)
    ]
    print(json.dumps(summary, indent=2))


async def run_crawl(args: argparse.Namespace, settings: Dict[str, object]) -> int:
    """Execute the crawl command; returns the process exit code."""
    if not args.all and not args.targets:
        raise ConfigError("Pass --target at least once or --all")
    targets = _targets(settings, None if args.all else args.targets)
    if not targets:
        print("No matching targets found")
        return 0
    if args.dry_run:
        _dry_run(targets)
        return 0
    runtime = HarvestRuntime.from_settings(settings)
    try:
        reports = await run_targets(targets, runtime)
    finally:
        runtime.index.close()
    print(json.dumps([report.to_dict() for report in reports], indent=2, default=str))
    return 0 if all(report.status == "completed" for report in reports) else 1


async def run_schedule(args: argparse.Namespace, settings: Dict[str, object]) -> None:
    wanted = settings.get("scheduler", {}).get("targets") or None
    targets = _targets(settings, wanted)
    runtime = HarvestRuntime.from_settings(settings)
    try:
        await run_schedule_loop(
            settings,
            targets=targets,
            runtime=runtime,
            interval_seconds=args.interval,
            ticks=args.ticks,
        )
    finally:
        runtime.index.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(args.settings))
    app_cfg = settings.get("app", {})
    configure_logging(Path(app_cfg.get("logging_config", "config/logging.yaml")), level=app_cfg.get("log_level"))

    if uvloop is not None:
        uvloop.install()

    try:
        if args.command == "seed-targets":
            from scripts.seed_targets import seed_targets

            seed_targets(Path(app_cfg.get("targets_csv", "config/targets.csv")))
            return

        if args.command == "schedule":
            asyncio.run(run_schedule(args, settings))
            return

        if args.command == "validate-targets":
            csv_path = Path(app_cfg.get("targets_csv", "config/targets.csv"))
            results = validate_targets(csv_path, default_page_limit=env_page_limit())
            report = []
            success = True
            for target_id, ok, detail in results:
                status = "OK"
                if detail == "disabled":
                    status = "DISABLED"
                elif not ok:
                    status = "FAIL"
                    success = False
                report.append({
                    "target": target_id,
                    "status": status,
                    "detail": detail if status != "OK" else "",
                })
            print(json.dumps(report, indent=2))
            if not success:
                raise SystemExit(1)
            return

        if args.command == "status":
            targets = _targets(settings, args.targets)
            broker = QueueBroker(Path(app_cfg.get("data_root", "data")) / "queues")
            queues = asyncio.run(queue_status(broker, targets))
            runs = summarise_runs(Path(app_cfg.get("data_root", "data")) / "manifests")
            print(json.dumps({"queues": queues, "runs": runs}, indent=2, default=str))
            return

        if args.command == "crawl":
            exit_code = asyncio.run(run_crawl(args, settings))
            if exit_code:
                raise SystemExit(exit_code)
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}")


if __name__ == "__main__":
    main()
