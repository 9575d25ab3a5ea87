"""Representations of rendered pages handed to extraction rules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property

from bs4 import BeautifulSoup


@dataclass
class RenderedPage:
    """DOM of a page after navigation, waits and scripted actions ran."""

    url: str
    html: str
    status_code: int | None = None
    rendered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")
