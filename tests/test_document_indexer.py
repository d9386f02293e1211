"""Tests for partition initialization and index passes."""

import time

import pytest

from storerag.common.errors import AuthError, EmbeddingFailure, LockedError, PlatformError
from storerag.indexer.document_indexer import DocumentIndexer
from storerag.indexer.normalizer import (
    build_sales_summary,
    chunk_id,
    normalize_entity,
    parse_timestamp,
    placeholder_chunk_id,
)
from storerag.namespaces.registry import Category, generate_partition_key, list_partitions_for_store
from storerag.vector_store.base import DocumentChunk

from tests.fakes import FakePlatform, days_ago, make_products


def make_indexer(vector_store, embedder, locks, platform, **kwargs):
    return DocumentIndexer(
        vector_store=vector_store,
        embedder=embedder,
        platform=platform,
        locks=locks,
        index_timeout=10,
        partition_init_timeout=5,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_initialize_partitions_is_idempotent(indexer, vector_store):
    assert await indexer.initialize_partitions("s1") == 6
    assert await indexer.initialize_partitions("s1") == 0

    for key in list_partitions_for_store("s1"):
        info = await vector_store.describe_partition(key)
        assert info.exists
        assert info.vector_count == 1


@pytest.mark.asyncio
async def test_initialize_partitions_skips_partitions_with_data(indexer, vector_store):
    await indexer.initialize_partitions("s1")
    await vector_store.delete_all_in_partition(generate_partition_key("s1", Category.ORDERS))

    assert await indexer.initialize_partitions("s1") == 1
    assert len(await vector_store.list_partitions("store-s1-")) == 6


@pytest.mark.asyncio
async def test_one_failed_embedding_does_not_fail_the_pass(vector_store, embedder, locks, credentials):
    platform = FakePlatform({"products": make_products(50, fail_index=17)})
    indexer = make_indexer(vector_store, embedder, locks, platform)

    report = await indexer.index_store_data("s1", credentials)

    assert report.attempted == 50
    assert report.succeeded == 49
    assert report.failed == 1
    assert report.failed_ids == ["products:1017"]
    assert report.partial
    info = await vector_store.describe_partition(generate_partition_key("s1", Category.CATALOG))
    assert info.vector_count == 49


@pytest.mark.asyncio
async def test_index_pass_replaces_placeholders_only_where_data_landed(indexer, vector_store, credentials):
    await indexer.initialize_partitions("s1")
    report = await indexer.index_store_data("s1", credentials)

    assert report.failed == 0
    assert report.derived == 1

    catalog = generate_partition_key("s1", Category.CATALOG)
    hits = await vector_store.delete_ids(catalog, [placeholder_chunk_id(Category.CATALOG)])
    assert hits == 0

    conversations = await vector_store.describe_partition(generate_partition_key("s1", Category.CONVERSATIONS))
    assert conversations.exists and conversations.vector_count == 1

    analytics = await vector_store.describe_partition(generate_partition_key("s1", Category.ANALYTICS))
    assert analytics.vector_count == 1


@pytest.mark.asyncio
async def test_reindexing_overwrites_instead_of_duplicating(indexer, vector_store, credentials):
    await indexer.index_store_data("s1", credentials)
    await indexer.index_store_data("s1", credentials)

    catalog = await vector_store.describe_partition(generate_partition_key("s1", Category.CATALOG))
    assert catalog.vector_count == 3


@pytest.mark.asyncio
async def test_previously_failed_entities_are_reported_as_recovered(indexer, credentials):
    report = await indexer.index_store_data("s1", credentials, previously_failed=["products:1001", "products:9999"])
    assert report.recovered_ids == ["products:1001"]


@pytest.mark.asyncio
async def test_fetch_errors_are_recorded_and_pass_continues(vector_store, embedder, locks, credentials):
    class FlakyOrders(FakePlatform):
        async def fetch_entities(self, credentials, entity_type, page=1, per_page=50):
            if entity_type == "orders":
                raise PlatformError("orders endpoint returned 503")
            return await super().fetch_entities(credentials, entity_type, page, per_page)

    indexer = make_indexer(vector_store, embedder, locks, FlakyOrders({"products": make_products(2)}))
    report = await indexer.index_store_data("s1", credentials)

    assert "orders" in report.fetch_errors
    assert report.succeeded == 2


@pytest.mark.asyncio
async def test_auth_error_propagates(vector_store, embedder, locks, credentials):
    indexer = make_indexer(vector_store, embedder, locks, FakePlatform(auth_error=True))
    with pytest.raises(AuthError):
        await indexer.index_store_data("s1", credentials)


@pytest.mark.asyncio
async def test_index_aborts_when_another_holder_takes_the_lock(indexer, locks, vector_store, credentials):
    await locks.acquire("s1", "delete")
    with pytest.raises(LockedError):
        await indexer.index_store_data("s1", credentials)
    with pytest.raises(LockedError):
        await indexer.initialize_partitions("s1")
    assert await vector_store.list_partitions("store-s1-") == []


@pytest.mark.asyncio
async def test_lock_holder_may_write(indexer, locks, vector_store):
    lock = await locks.acquire("s1", "reconnect")
    assert await indexer.initialize_partitions("s1", lock_token=lock.token) == 6


def test_chunk_ids_are_deterministic():
    product = make_products(1)[0]
    first = normalize_entity("products", product)
    second = normalize_entity("products", dict(product))
    assert first.chunk_id == second.chunk_id == chunk_id("products", "1000")
    assert "Producto: Remera algodón modelo 0" in first.text


def test_normalize_rejects_entities_without_id():
    with pytest.raises(ValueError):
        normalize_entity("products", {"name": "sin id"})


@pytest.mark.asyncio
async def test_orders_past_retention_are_skipped(vector_store, embedder, locks, credentials):
    orders = [
        {"id": 1, "number": 1, "status": "closed", "total": "100.00", "created_at": days_ago(2), "products": []},
        {"id": 2, "number": 2, "status": "closed", "total": "200.00", "created_at": days_ago(400), "products": []},
    ]
    indexer = make_indexer(vector_store, embedder, locks, FakePlatform({"orders": orders}))

    report = await indexer.index_store_data("s1", credentials)

    assert report.skipped == 1
    assert report.attempted == 1
    assert report.to_dict()["skipped"] == 1
    key = generate_partition_key("s1", Category.ORDERS)
    assert await vector_store.delete_ids(key, [chunk_id("orders", "2")]) == 0
    assert (await vector_store.describe_partition(key)).vector_count == 1


@pytest.mark.asyncio
async def test_retention_prunes_expired_chunks_and_restores_placeholder(indexer, vector_store, embedder):
    await indexer.initialize_partitions("s1")
    key = generate_partition_key("s1", Category.ANALYTICS)
    await vector_store.delete_all_in_partition(key)
    stale = DocumentChunk(
        id="stale-summary",
        partition_key=key,
        text="Resumen de ventas viejo",
        embedding=await embedder.embed("Resumen de ventas viejo"),
        metadata={"timestamp": time.time() - 120 * 86400, "is_placeholder": False},
    )
    await vector_store.upsert([stale])

    assert await indexer.enforce_retention("s1") == 1
    assert await vector_store.delete_ids(key, ["stale-summary"]) == 0
    assert await vector_store.delete_ids(key, [placeholder_chunk_id(Category.ANALYTICS)]) == 1


@pytest.mark.asyncio
async def test_reseed_with_embedder_down_leaves_partitions_untouched(indexer, vector_store, embedder, credentials):
    await indexer.initialize_partitions("s1")
    await indexer.index_store_data("s1", credentials)
    embedder.down = True

    with pytest.raises(EmbeddingFailure):
        await indexer.reseed_partitions("s1")

    catalog = await vector_store.describe_partition(generate_partition_key("s1", Category.CATALOG))
    assert catalog.vector_count == 3
    assert len(await vector_store.list_partitions("store-s1-")) == 6


@pytest.mark.asyncio
async def test_reseed_replaces_content_with_placeholders(indexer, vector_store, credentials):
    await indexer.initialize_partitions("s1")
    await indexer.index_store_data("s1", credentials)

    assert await indexer.reseed_partitions("s1") == 6
    for key in list_partitions_for_store("s1"):
        assert (await vector_store.describe_partition(key)).vector_count == 1


def test_sales_summary_ignores_malformed_line_items():
    orders = [
        {"id": 1, "products": 5},
        "not-an-order",
        {"id": 2, "products": [{"name": "Remera", "quantity": 2, "price": "10.00"}]},
    ]
    summary = build_sales_summary(orders)
    assert summary["total_orders"] == 2
    assert summary["top_products"] == [{"name": "Remera", "quantity": 2, "revenue": 20.0}]


def test_parse_timestamp_accepts_offsets_without_colon():
    assert parse_timestamp("2024-05-01T10:00:00+0000") == parse_timestamp("2024-05-01T10:00:00Z")
    assert parse_timestamp("2024-05-01T07:00:00-0300") == parse_timestamp("2024-05-01T10:00:00+00:00")
