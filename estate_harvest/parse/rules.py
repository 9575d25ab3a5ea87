"""Declarative CSS selector rules for listing and detail pages."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from bs4 import BeautifulSoup, Tag

from estate_harvest.errors import ConfigError

# A field is a single expression or an ordered list of fallbacks.
Expression = Union[str, List[str]]


@dataclass
class ListingRules:
    """How to read item links off a listing index page."""

    links: str
    base_url: Optional[str] = None
    wait_for: Optional[str] = None
    scroll: bool = True
    end_marker: Optional[str] = None
    end_marker_text: Optional[str] = None


@dataclass
class CharacteristicsRule:
    """Key/value pairs laid out as rows, or as two parallel lists under a container."""

    container: str
    key: str
    value: str
    mode: str = "rows"


@dataclass
class DetailRules:
    """How to turn a rendered detail page into raw listing fields."""

    fields: Dict[str, Expression]
    wait_for: Optional[str] = None
    clicks: List[str] = field(default_factory=list)
    settle_seconds: float = 0.0
    remove: List[str] = field(default_factory=list)
    defaults: Dict[str, str] = field(default_factory=dict)
    photo_base_url: Optional[str] = None
    characteristics: Optional[CharacteristicsRule] = None


@dataclass
class RuleSpec:
    site: str
    listing: ListingRules
    detail: DetailRules


def load_rule(path: Path) -> RuleSpec:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read rules {path}: {exc}") from exc
    listing = data.get("listing") or {}
    detail = data.get("detail") or {}
    if not listing.get("links"):
        raise ConfigError(f"Rules {path} define no listing.links selector")
    if not detail.get("fields"):
        raise ConfigError(f"Rules {path} define no detail.fields")
    characteristics = detail.get("characteristics")
    return RuleSpec(
        site=str(data.get("site", path.stem.split("_")[0])),
        listing=ListingRules(
            links=listing["links"],
            base_url=listing.get("base_url"),
            wait_for=listing.get("wait_for"),
            scroll=bool(listing.get("scroll", True)),
            end_marker=listing.get("end_marker"),
            end_marker_text=listing.get("end_marker_text"),
        ),
        detail=DetailRules(
            fields=dict(detail["fields"]),
            wait_for=detail.get("wait_for"),
            clicks=list(detail.get("clicks", [])),
            settle_seconds=float(detail.get("settle_seconds", 0.0)),
            remove=list(detail.get("remove", [])),
            defaults={key: str(value) for key, value in (detail.get("defaults") or {}).items()},
            photo_base_url=detail.get("photo_base_url"),
            characteristics=CharacteristicsRule(**characteristics) if characteristics else None,
        ),
    )


def _parse_expression(expression: str) -> Tuple[str, Optional[str], bool, bool]:
    expr = expression.strip()
    multi = False
    if expr.endswith("[]"):
        multi = True
        expr = expr[:-2]
    text_fallback = False
    if expr.endswith("|text"):
        text_fallback = True
        expr = expr[:-5]
    expr = expr.replace(" @", "@")
    if "@" in expr:
        selector, attr = expr.rsplit("@", 1)
        return selector.strip(), attr.strip(), multi, text_fallback
    return expr.strip(), None, multi, text_fallback


def _value_from_element(element: Tag, attr: Optional[str], text_fallback: bool) -> Optional[str]:
    if attr:
        value = element.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        if value:
            return value.strip()
        if text_fallback:
            text = element.get_text(" ", strip=True)
            return text or None
        return None
    text = element.get_text(" ", strip=True)
    return text or None


def select_value(root: Union[BeautifulSoup, Tag], expression: Expression) -> Union[str, List[str], None]:
    """Evaluate an expression; lists of expressions are tried in order."""
    if isinstance(expression, list):
        for candidate in expression:
            value = select_value(root, candidate)
            if value:
                return value
        return None
    selector, attr, multi, text_fallback = _parse_expression(expression)
    if multi:
        values: List[str] = []
        for element in root.select(selector):
            value = _value_from_element(element, attr, text_fallback)
            if value:
                values.append(value)
        return values
    element = root.select_one(selector)
    if element is None:
        return None
    return _value_from_element(element, attr, text_fallback)


def select_pairs(root: Union[BeautifulSoup, Tag], rule: CharacteristicsRule) -> List[Tuple[Optional[str], Optional[str]]]:
    pairs: List[Tuple[Optional[str], Optional[str]]] = []
    if rule.mode == "zip":
        for container in root.select(rule.container):
            keys = [element.get_text(" ", strip=True) for element in container.select(rule.key)]
            values = [element.get_text(" ", strip=True) for element in container.select(rule.value)]
            pairs.extend(zip(keys, values))
        return pairs
    for row in root.select(rule.container):
        key = row.select_one(rule.key)
        value = row.select_one(rule.value)
        if key is None or value is None:
            continue
        pairs.append((key.get_text(" ", strip=True), value.get_text(" ", strip=True)))
    return pairs


def strip_elements(soup: BeautifulSoup, selectors: List[str]) -> None:
    for selector in selectors:
        for element in soup.select(selector):
            element.decompose()


def click_script(selector: str) -> str:
    """JavaScript that clicks the first element matching ``selector`` if present."""
    quoted = selector.replace("\\", "\\\\").replace("'", "\\'")
    return f"(() => {{ const el = document.querySelector('{quoted}'); if (el) {{ el.click(); }} }})();"
