"""Utilities for loading crawl targets from the registry CSV."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from estate_harvest.errors import ConfigError


class CrawlTarget(BaseModel):
    """Validated configuration for one (site, listing type) crawl target."""

    site: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    listing_type: str = Field(pattern=r"^(buy|rent|daily)$")
    url_template: str = Field(min_length=1)
    page_limit: int = Field(gt=0)
    rules_path: Path
    enabled: bool = True

    @property
    def target_id(self) -> str:
        return f"{self.site}/{self.listing_type}"

    @field_validator("url_template")
    @classmethod
    def _require_page_placeholder(cls, value: str) -> str:
        if "{page}" not in value:
            raise ValueError("url_template must contain a {page} placeholder")
        return value

    @field_validator("rules_path", mode="before")
    @classmethod
    def _resolve_path(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value
        return Path(value)

    def page_url(self, page_number: int) -> str:
        return self.url_template.format(page=page_number)

    def ensure_rules_exist(self) -> None:
        if not self.rules_path.exists():
            raise FileNotFoundError(f"Rule file not found: {self.rules_path}")


def _coerce_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _prepare_row(row: dict[str, str], base_dir: Path, default_page_limit: Optional[int]) -> dict[str, object]:
    mapped: dict[str, object] = {}
    for key, value in row.items():
        if key is None:
            continue
        mapped[key.strip()] = value.strip() if isinstance(value, str) else value
    mapped["enabled"] = _coerce_bool(mapped.get("enabled"), default=True)
    if mapped.get("page_limit") in {"", None} and default_page_limit is not None:
        mapped["page_limit"] = default_page_limit
    rules = mapped.get("rules_path", "")
    mapped["rules_path"] = (base_dir / str(rules)).resolve()
    return mapped


def load_targets(csv_path: Path, *, default_page_limit: Optional[int] = None) -> List[CrawlTarget]:
    """Load enabled targets from the registry CSV, validating each row.

    A page limit that is missing, zero or non-numeric is a configuration error
    rather than a crawl that silently enumerates nothing.
    """
    targets: List[CrawlTarget] = []
    base_dir = csv_path.parent
    with csv_path.open("r", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for raw in reader:
            if not raw or not raw.get("site"):
                continue
            prepared = _prepare_row(raw, base_dir, default_page_limit)
            try:
                target = CrawlTarget(**prepared)
                if target.enabled:
                    target.ensure_rules_exist()
            except (ValidationError, FileNotFoundError, ValueError) as exc:
                label = f"{prepared.get('site')}/{prepared.get('listing_type')}"
                raise ConfigError(f"Invalid target row {label}: {exc}") from exc
            if not target.enabled:
                continue
            targets.append(target)
    return targets


def validate_targets(csv_path: Path, *, default_page_limit: Optional[int] = None) -> List[Tuple[str, bool, str]]:
    """Validate all rows, returning results per target without raising."""
    results: List[Tuple[str, bool, str]] = []
    base_dir = csv_path.parent
    with csv_path.open("r", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for raw in reader:
            if not raw or not raw.get("site"):
                continue
            prepared = _prepare_row(raw, base_dir, default_page_limit)
            label = f"{prepared.get('site')}/{prepared.get('listing_type')}"
            try:
                target = CrawlTarget(**prepared)
                if target.enabled:
                    target.ensure_rules_exist()
            except (ValidationError, FileNotFoundError, ValueError) as exc:
                results.append((label, False, str(exc)))
            else:
                status = "disabled" if not target.enabled else "ok"
                results.append((label, True, status))
    return results


def select_targets(targets: List[CrawlTarget], wanted: Optional[List[str]]) -> List[CrawlTarget]:
    """Filter targets by ``site/listing_type`` ids; None selects everything."""
    if not wanted:
        return list(targets)
    known = {target.target_id: target for target in targets}
    missing = [target_id for target_id in wanted if target_id not in known]
    if missing:
        raise ConfigError(f"Unknown target(s): {', '.join(missing)}")
    return [known[target_id] for target_id in wanted]
