"""Pydantic models for listings as they move from the page to the store."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field


class RawFields(BaseModel):
    """Fields pulled off a detail page before the target identity is attached."""

    price: int = Field(..., ge=0, description="Asking price in tenge")
    location: str = Field(..., min_length=1)
    floor: str = ""
    contact_number: str = ""
    photos: List[str] = Field(default_factory=list)
    characteristics: Dict[str, str] = Field(default_factory=dict)
    description: str = ""


class ListingRecord(RawFields):
    """Canonical listing keyed by its detail page link."""

    link: str = Field(..., min_length=1)
    site: str
    listing_type: str
    last_checked_at: datetime

    @classmethod
    def from_raw(
        cls,
        raw: RawFields,
        *,
        link: str,
        site: str,
        listing_type: str,
        checked_at: datetime,
    ) -> "ListingRecord":
        return cls(
            **raw.model_dump(),
            link=link,
            site=site,
            listing_type=listing_type,
            last_checked_at=checked_at,
        )

    def embedding_text(self) -> str:
        """Text the similarity index embeds for this listing."""
        characteristics = ", ".join(f"{key}: {value}" for key, value in self.characteristics.items())
        parts = [self.description, str(self.price), self.location, self.floor, characteristics]
        return " ".join(part for part in parts if part)


class IndexEntry(BaseModel):
    """A listing as held by the similarity index."""

    id: str
    link: str
    site: str
    listing_type: str
    price: int
    location: str
    last_checked_at: float
