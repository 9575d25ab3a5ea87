import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from qdrant_client import QdrantClient

from conftest import make_index
from estate_harvest.errors import ConfigError, StorageError
from estate_harvest.storage.index import ListingIndex, build_client, build_embeddings, point_id
from estate_harvest.storage.models import ListingRecord
from estate_harvest.storage.store import ListingStore, format_timestamp

CHECKED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(link="https://krisha.kz/a/show/1", **overrides):
    data = dict(
        link=link,
        site="krisha",
        listing_type="buy",
        price=62_000_000,
        location="Розыбакиева 247",
        floor="7/12 этаж",
        photos=["https://photos.krisha.kz/1.jpg"],
        characteristics={"Тип дома": "монолитный"},
        last_checked_at=CHECKED,
    )
    data.update(overrides)
    return ListingRecord(**data)


def test_upsert_is_idempotent_per_link(tmp_path):
    store = ListingStore(tmp_path / "listings.db")
    store.upsert(_record())
    store.upsert(_record(price=60_000_000, last_checked_at=CHECKED + timedelta(hours=1)))

    assert store.count() == 1
    record = store.get("https://krisha.kz/a/show/1")
    assert record.price == 60_000_000
    assert record.last_checked_at == CHECKED + timedelta(hours=1)
    assert record.photos == ["https://photos.krisha.kz/1.jpg"]
    assert record.characteristics == {"Тип дома": "монолитный"}


def test_delete_stale_keeps_records_checked_at_cutoff(tmp_path):
    store = ListingStore(tmp_path / "listings.db")
    store.upsert(_record("https://k/old", last_checked_at=CHECKED - timedelta(microseconds=1)))
    store.upsert(_record("https://k/boundary"))
    store.upsert(_record("https://k/rent", listing_type="rent", last_checked_at=CHECKED - timedelta(days=1)))

    assert store.delete_stale(site="krisha", listing_type="buy", cutoff=CHECKED) == 1
    assert [record.link for record in store.list(site="krisha", listing_type="buy")] == ["https://k/boundary"]
    assert store.count(listing_type="rent") == 1


def test_timestamps_sort_as_text():
    earlier = format_timestamp(datetime(2024, 5, 1, 9, 0, tzinfo=timezone(timedelta(hours=5))))
    later = format_timestamp(datetime(2024, 5, 1, 4, 30, 0, 1))
    assert earlier == "2024-05-01T04:00:00.000000+00:00"
    assert earlier < later


def test_async_wrappers_delegate_to_threads(tmp_path):
    store = ListingStore(tmp_path / "listings.db")

    async def scenario():
        await store.upsert_async(_record(last_checked_at=CHECKED - timedelta(days=2)))
        return await store.delete_stale_async(site="krisha", listing_type="buy", cutoff=CHECKED)

    assert asyncio.run(scenario()) == 1
    assert store.count() == 0


def test_point_ids_are_stable_uuids():
    assert point_id("https://krisha.kz/a/show/1") == point_id("https://krisha.kz/a/show/1")
    assert point_id("https://krisha.kz/a/show/1") != point_id("https://krisha.kz/a/show/2")
    assert len(point_id("x")) == 36


def test_index_upsert_replaces_point_for_same_link():
    index = make_index()

    async def scenario():
        await index.upsert_async(_record())
        await index.upsert_async(_record(price=1, last_checked_at=CHECKED + timedelta(minutes=1)))

    asyncio.run(scenario())
    entries = index.query(site="krisha", listing_type="buy")
    assert len(entries) == 1
    assert entries[0].id == point_id("https://krisha.kz/a/show/1")
    assert entries[0].price == 1
    assert entries[0].last_checked_at == (CHECKED + timedelta(minutes=1)).timestamp()


def test_index_delete_stale_is_scoped_to_target():
    index = make_index()

    async def scenario():
        await index.upsert_async(_record("https://k/old", last_checked_at=CHECKED - timedelta(days=1)))
        await index.upsert_async(_record("https://k/fresh"))
        await index.upsert_async(_record("https://e/old", site="etagi", last_checked_at=CHECKED - timedelta(days=1)))
        return await index.delete_stale_async(site="krisha", listing_type="buy", cutoff=CHECKED)

    assert asyncio.run(scenario()) == 1
    assert [entry.link for entry in index.query(site="krisha", listing_type="buy")] == ["https://k/fresh"]
    assert len(index.query(site="etagi", listing_type="buy")) == 1


def test_delete_many_with_no_ids_is_a_noop():
    assert make_index().delete_many([]) == 0


def test_fake_embeddings_use_configured_size():
    embeddings = build_embeddings({"index": {"embeddings_provider": "fake", "embedding_size": 8}})
    assert len(embeddings.embed_query("квартира")) == 8


def test_google_embeddings_require_api_key(monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    with pytest.raises(ConfigError):
        build_embeddings({"index": {"embeddings_provider": "google"}})


def test_unknown_embeddings_provider_is_rejected():
    with pytest.raises(ConfigError):
        build_embeddings({"index": {"embeddings_provider": "word2vec"}})


def test_local_path_client(tmp_path, monkeypatch):
    monkeypatch.delenv("QDRANT_URL", raising=False)
    client = build_client({"index": {"location": str(tmp_path / "qdrant")}})
    try:
        assert client.get_collections().collections == []
    finally:
        client.close()


class SlowWarmupEmbedding(DeterministicFakeEmbedding):
    def embed_query(self, text: str) -> List[float]:
        time.sleep(0.2)
        return super().embed_query(text)


def test_first_upserts_from_two_threads_share_one_collection():
    index = ListingIndex(QdrantClient(location=":memory:"), SlowWarmupEmbedding(size=16))
    records = [_record("https://k/1"), _record("https://k/2")]
    vector = [0.1] * 16

    async def scenario():
        return await asyncio.gather(*(asyncio.to_thread(index.upsert, record, vector) for record in records))

    ids = asyncio.run(scenario())

    assert sorted(ids) == sorted(point_id(record.link) for record in records)
    assert sorted(entry.link for entry in index.query(site="krisha", listing_type="buy")) == ["https://k/1", "https://k/2"]


def test_collection_created_elsewhere_counts_as_ready(monkeypatch):
    client = QdrantClient(location=":memory:")
    index = ListingIndex(client, DeterministicFakeEmbedding(size=16))
    create = client.create_collection

    def lose_race(**kwargs):
        create(**kwargs)
        raise ValueError(f"Collection {kwargs['collection_name']} already exists")

    monkeypatch.setattr(client, "collection_exists", lambda name: False)
    monkeypatch.setattr(client, "create_collection", lose_race)
    index.ensure_collection()
    monkeypatch.undo()

    index.upsert(_record(), [0.1] * 16)
    assert [entry.link for entry in index.query(site="krisha", listing_type="buy")] == ["https://krisha.kz/a/show/1"]


def test_unreachable_index_raises_storage_error(monkeypatch):
    client = QdrantClient(location=":memory:")
    index = ListingIndex(client, DeterministicFakeEmbedding(size=16))

    def refuse(name):
        raise ConnectionError("qdrant is down")

    monkeypatch.setattr(client, "collection_exists", refuse)
    with pytest.raises(StorageError):
        index.ensure_collection()
