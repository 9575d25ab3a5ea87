"""SQLite-backed listing store with upsert keyed by link."""
from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import structlog

from estate_harvest.errors import StorageError
from estate_harvest.storage.models import ListingRecord

LOGGER = structlog.get_logger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

_DDL = """
    CREATE TABLE IF NOT EXISTS listings (
        link TEXT PRIMARY KEY,
        site TEXT NOT NULL,
        listing_type TEXT NOT NULL,
        price INTEGER NOT NULL,
        location TEXT NOT NULL,
        floor TEXT NOT NULL,
        contact_number TEXT NOT NULL,
        photos_json TEXT NOT NULL,
        characteristics_json TEXT NOT NULL,
        description TEXT NOT NULL,
        last_checked_at TEXT NOT NULL
    )
"""

_INDEX_DDL = "CREATE INDEX IF NOT EXISTS listings_target ON listings (site, listing_type, last_checked_at)"

_UPSERT_SQL = """
    INSERT INTO listings (
        link, site, listing_type, price, location, floor,
        contact_number, photos_json, characteristics_json, description, last_checked_at
    ) VALUES (
        :link, :site, :listing_type, :price, :location, :floor,
        :contact_number, :photos_json, :characteristics_json, :description, :last_checked_at
    )
    ON CONFLICT(link) DO UPDATE SET
        site=excluded.site,
        listing_type=excluded.listing_type,
        price=excluded.price,
        location=excluded.location,
        floor=excluded.floor,
        contact_number=excluded.contact_number,
        photos_json=excluded.photos_json,
        characteristics_json=excluded.characteristics_json,
        description=excluded.description,
        last_checked_at=excluded.last_checked_at
"""


def format_timestamp(value: datetime) -> str:
    """Render a datetime as fixed-width UTC text so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _row_to_record(row: sqlite3.Row) -> ListingRecord:
    return ListingRecord(
        link=row["link"],
        site=row["site"],
        listing_type=row["listing_type"],
        price=row["price"],
        location=row["location"],
        floor=row["floor"],
        contact_number=row["contact_number"],
        photos=orjson.loads(row["photos_json"]),
        characteristics=orjson.loads(row["characteristics_json"]),
        description=row["description"],
        last_checked_at=datetime.fromisoformat(row["last_checked_at"]),
    )


class ListingStore:
    """Durable relational store of current listings.

    Each call opens its own connection so the async wrappers can hand the
    blocking work to a thread without sharing a connection across threads.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        connection = self._connect()
        try:
            connection.execute(_DDL)
            connection.execute(_INDEX_DDL)
            connection.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot initialise listing store {self._path}: {exc}") from exc
        finally:
            connection.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(self._path, timeout=30)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open listing store {self._path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        return connection

    def _execute(self, sql: str, params: Dict[str, object] | tuple = ()) -> sqlite3.Cursor:
        connection = self._connect()
        try:
            cursor = connection.execute(sql, params)
            connection.commit()
            return cursor
        except sqlite3.Error as exc:
            raise StorageError(f"listing store query failed: {exc}") from exc
        finally:
            connection.close()

    def upsert(self, record: ListingRecord) -> None:
        """Insert or replace the listing keyed by ``record.link``."""
        params = {
            "link": record.link,
            "site": record.site,
            "listing_type": record.listing_type,
            "price": record.price,
            "location": record.location,
            "floor": record.floor,
            "contact_number": record.contact_number,
            "photos_json": orjson.dumps(record.photos).decode(),
            "characteristics_json": orjson.dumps(record.characteristics).decode(),
            "description": record.description,
            "last_checked_at": format_timestamp(record.last_checked_at),
        }
        self._execute(_UPSERT_SQL, params)

    def get(self, link: str) -> Optional[ListingRecord]:
        connection = self._connect()
        try:
            row = connection.execute("SELECT * FROM listings WHERE link = ?", (link,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"listing store query failed: {exc}") from exc
        finally:
            connection.close()
        return _row_to_record(row) if row is not None else None

    def list(self, *, site: str, listing_type: str) -> List[ListingRecord]:
        connection = self._connect()
        try:
            rows = connection.execute(
                "SELECT * FROM listings WHERE site = ? AND listing_type = ? ORDER BY link",
                (site, listing_type),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"listing store query failed: {exc}") from exc
        finally:
            connection.close()
        return [_row_to_record(row) for row in rows]

    def count(self, *, site: Optional[str] = None, listing_type: Optional[str] = None) -> int:
        clauses, params = [], []
        if site is not None:
            clauses.append("site = ?")
            params.append(site)
        if listing_type is not None:
            clauses.append("listing_type = ?")
            params.append(listing_type)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        connection = self._connect()
        try:
            (value,) = connection.execute(f"SELECT COUNT(*) FROM listings{where}", params).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"listing store query failed: {exc}") from exc
        finally:
            connection.close()
        return int(value)

    def delete_stale(self, *, site: str, listing_type: str, cutoff: datetime) -> int:
        """Delete the target's listings last checked strictly before ``cutoff``."""
        cursor = self._execute(
            "DELETE FROM listings WHERE site = ? AND listing_type = ? AND last_checked_at < ?",
            (site, listing_type, format_timestamp(cutoff)),
        )
        deleted = cursor.rowcount
        LOGGER.info("store_evicted", site=site, listing_type=listing_type, deleted=deleted)
        return deleted

    async def upsert_async(self, record: ListingRecord) -> None:
        await asyncio.to_thread(self.upsert, record)

    async def delete_stale_async(self, *, site: str, listing_type: str, cutoff: datetime) -> int:
        return await asyncio.to_thread(self.delete_stale, site=site, listing_type=listing_type, cutoff=cutoff)
