#!/usr/bin/env python
"""Populate the target registry with the built-in Almaty targets."""
from __future__ import annotations

import argparse
import csv
from pathlib import Path

from dotenv import load_dotenv

FIELDNAMES = ["site", "listing_type", "url_template", "page_limit", "rules_path", "enabled"]

DEFAULT_TARGETS = [
    {
        "site": "etagi",
        "listing_type": "buy",
        "url_template": "https://almaty.etagi.com/realty/?page={page}",
        "page_limit": "20",
        "rules_path": "rules/etagi.yaml",
        "enabled": "true",
    },
    {
        "site": "etagi",
        "listing_type": "rent",
        "url_template": "https://almaty.etagi.com/realty_rent/?page={page}",
        "page_limit": "20",
        "rules_path": "rules/etagi.yaml",
        "enabled": "true",
    },
    {
        "site": "krisha",
        "listing_type": "buy",
        "url_template": "https://krisha.kz/prodazha/kvartiry/almaty/?das[_sys.hasphoto]=1&das[who]=1&page={page}",
        "page_limit": "20",
        "rules_path": "rules/krisha.yaml",
        "enabled": "true",
    },
    {
        "site": "kn",
        "listing_type": "daily",
        "url_template": "https://www.kn.kz/almaty/arenda-kvartir-posutochno/page/{page}/",
        "page_limit": "10",
        "rules_path": "rules/kn.yaml",
        "enabled": "true",
    },
]


def seed_targets(path: Path) -> int:
    """Append default rows that are not registered yet; returns how many were added."""
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = set()
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            existing = {(row.get("site"), row.get("listing_type")) for row in csv.DictReader(handle)}
    exists = path.exists() and path.stat().st_size > 0
    added = 0
    with path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=FIELDNAMES)
        if not exists:
            writer.writeheader()
        for row in DEFAULT_TARGETS:
            if (row["site"], row["listing_type"]) in existing:
                continue
            writer.writerow(row)
            added += 1
    return added


def main() -> None:
    """CLI entrypoint used by `estate-harvest seed-targets`."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Seed the target registry with default targets")
    parser.add_argument(
        "--path",
        type=Path,
        default=Path("config/targets.csv"),
        help="Path to the target registry CSV",
    )
    args = parser.parse_args()
    seed_targets(args.path)


if __name__ == "__main__":
    main()
