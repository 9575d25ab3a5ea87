"""Similarity index of listings stored in Qdrant."""
from __future__ import annotations

import asyncio
import os
import threading
import uuid
from datetime import datetime
from typing import Dict, Iterable, List

import structlog
from langchain_core.embeddings import DeterministicFakeEmbedding, Embeddings
from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels

from estate_harvest.errors import ConfigError, StorageError
from estate_harvest.storage.models import IndexEntry, ListingRecord

LOGGER = structlog.get_logger(__name__)

_POINT_NAMESPACE = uuid.UUID("6f1d1f0e-8a5c-4c55-9a59-3c0e8d6b2b11")
_SCROLL_PAGE = 256


def point_id(link: str) -> str:
    """Qdrant ids must be UUIDs or integers, so links map to a stable UUIDv5."""
    return str(uuid.uuid5(_POINT_NAMESPACE, link))


def build_embeddings(settings: Dict[str, object]) -> Embeddings:
    """Create the embedding model named by ``[index] embeddings_provider``."""
    index_cfg = settings.get("index", {})
    provider = str(index_cfg.get("embeddings_provider", "fake"))
    size = int(index_cfg.get("embedding_size", 768))
    if provider == "fake":
        return DeterministicFakeEmbedding(size=size)
    if provider == "google":
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        api_key = os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ConfigError("GOOGLE_API_KEY must be set for the google embeddings provider")
        return GoogleGenerativeAIEmbeddings(
            model=str(index_cfg.get("embeddings_model", "models/text-embedding-004")),
            google_api_key=api_key,
        )
    raise ConfigError(f"Unknown embeddings provider: {provider}")


def build_client(settings: Dict[str, object]) -> QdrantClient:
    index_cfg = settings.get("index", {})
    url = os.getenv("QDRANT_URL") or index_cfg.get("url")
    if url:
        return QdrantClient(url=str(url), api_key=os.getenv("QDRANT_API_KEY"))
    location = str(index_cfg.get("location", ":memory:"))
    if location == ":memory:":
        return QdrantClient(location=":memory:")
    return QdrantClient(path=location)


def _timestamp(value: datetime) -> float:
    return value.timestamp()


class ListingIndex:
    """Upserts listing embeddings and evicts them by target and age."""

    def __init__(self, client: QdrantClient, embeddings: Embeddings, *, collection: str = "listings") -> None:
        self._client = client
        self._embeddings = embeddings
        self.collection = collection
        self._ready = False
        self._lock = threading.Lock()

    def ensure_collection(self) -> None:
        """Create the collection and its keyword payload indexes if missing.

        Item workers reach this through ``asyncio.to_thread``, so the first
        upserts of a cycle may arrive together from several threads.
        """
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            try:
                self._create_collection()
            except Exception as exc:
                raise StorageError(f"cannot prepare index collection {self.collection}: {exc}") from exc
            self._ready = True

    def _create_collection(self) -> None:
        if self._client.collection_exists(self.collection):
            return
        size = len(self._embeddings.embed_query("warmup"))
        try:
            self._client.create_collection(
                collection_name=self.collection,
                vectors_config=qmodels.VectorParams(size=size, distance=qmodels.Distance.COSINE),
            )
        except Exception:
            # another process sharing the server got there first
            if not self._client.collection_exists(self.collection):
                raise
            LOGGER.info("index_collection_exists", collection=self.collection)
            return
        for field_name in ("site", "listing_type"):
            self._client.create_payload_index(
                collection_name=self.collection,
                field_name=field_name,
                field_schema=qmodels.PayloadSchemaType.KEYWORD,
            )

    def _payload(self, record: ListingRecord) -> Dict[str, object]:
        return {
            "link": record.link,
            "site": record.site,
            "listing_type": record.listing_type,
            "price": record.price,
            "location": record.location,
            "last_checked_at": _timestamp(record.last_checked_at),
        }

    def upsert(self, record: ListingRecord, vector: List[float]) -> str:
        self.ensure_collection()
        identifier = point_id(record.link)
        try:
            self._client.upsert(
                collection_name=self.collection,
                points=[qmodels.PointStruct(id=identifier, vector=list(vector), payload=self._payload(record))],
            )
        except Exception as exc:
            raise StorageError(f"index upsert failed for {record.link}: {exc}") from exc
        return identifier

    async def upsert_async(self, record: ListingRecord) -> str:
        """Embed the listing text and write its point."""
        try:
            vector = await self._embeddings.aembed_query(record.embedding_text())
        except Exception as exc:
            raise StorageError(f"embedding failed for {record.link}: {exc}") from exc
        return await asyncio.to_thread(self.upsert, record, vector)

    def query(self, *, site: str, listing_type: str) -> List[IndexEntry]:
        """Return every entry stored for one target."""
        self.ensure_collection()
        entries: List[IndexEntry] = []
        scroll_filter = qmodels.Filter(
            must=[
                qmodels.FieldCondition(key="site", match=qmodels.MatchValue(value=site)),
                qmodels.FieldCondition(key="listing_type", match=qmodels.MatchValue(value=listing_type)),
            ]
        )
        offset = None
        try:
            while True:
                points, offset = self._client.scroll(
                    collection_name=self.collection,
                    scroll_filter=scroll_filter,
                    limit=_SCROLL_PAGE,
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                for point in points:
                    payload = point.payload or {}
                    entries.append(IndexEntry(id=str(point.id), **payload))
                if offset is None:
                    break
        except Exception as exc:
            raise StorageError(f"index scroll failed for {site}/{listing_type}: {exc}") from exc
        return entries

    def delete_many(self, ids: Iterable[str]) -> int:
        identifiers = list(ids)
        if not identifiers:
            return 0
        self.ensure_collection()
        try:
            self._client.delete(
                collection_name=self.collection,
                points_selector=qmodels.PointIdsList(points=identifiers),
            )
        except Exception as exc:
            raise StorageError(f"index delete failed: {exc}") from exc
        return len(identifiers)

    def delete_stale(self, *, site: str, listing_type: str, cutoff: datetime) -> int:
        """Delete the target's entries checked before ``cutoff``; scroll then delete by id."""
        threshold = _timestamp(cutoff)
        stale = [entry.id for entry in self.query(site=site, listing_type=listing_type) if entry.last_checked_at < threshold]
        deleted = self.delete_many(stale)
        LOGGER.info("index_evicted", site=site, listing_type=listing_type, deleted=deleted)
        return deleted

    async def delete_stale_async(self, *, site: str, listing_type: str, cutoff: datetime) -> int:
        return await asyncio.to_thread(self.delete_stale, site=site, listing_type=listing_type, cutoff=cutoff)

    def close(self) -> None:
        self._client.close()
