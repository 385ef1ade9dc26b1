import pytest
import pytest_asyncio

from polystore.core.errors import StoreConnectionError
from polystore.core.filters import Eq, In, Range
from polystore.core.model import SortSpec
from polystore.core.stores.document import MemoryDocumentStore, mongo_matches, to_mongo_filter
from polystore.core.stores.interfaces import HealthStatus, StoreQuery


def test_mongo_filter_translation() -> None:
    query = StoreQuery(
        tenant_id="t1",
        filters=(
            Eq("id", "abc"),
            In("severity", ("high", "low")),
            Range("score", 5, None),
            Range("score", None, 9),
        ),
    )
    assert to_mongo_filter(query) == {
        "tenant_id": "t1",
        "_id": "abc",
        "severity": {"$in": ["high", "low"]},
        "score": {"$gte": 5},
        "$and": [{"score": {"$lte": 9}}],
    }


def test_mongo_matches_evaluates_operators() -> None:
    document = {"id": "abc", "tenant_id": "t1", "score": 7, "tags": ["a", "b"]}
    assert mongo_matches(document, {"_id": "abc", "score": {"$gte": 5, "$lte": 7}})
    assert mongo_matches(document, {"tags": "a"})
    assert mongo_matches(document, {"tags": {"$in": ["z", "b"]}})
    assert not mongo_matches(document, {"tenant_id": "t2"})


@pytest_asyncio.fixture
async def store() -> MemoryDocumentStore:
    store = MemoryDocumentStore()
    await store.connect()
    for index, (tenant, severity) in enumerate(
        [("t1", "high"), ("t1", "low"), ("t1", "high"), ("t2", "high")]
    ):
        await store.put(
            "alert",
            f"a{index}",
            {"tenant_id": tenant, "severity": severity, "rank": index},
        )
    return store


@pytest.mark.asyncio
async def test_get_is_tenant_scoped(store: MemoryDocumentStore) -> None:
    assert (await store.get_by_key("alert", "a0", tenant_id="t1"))["severity"] == "high"
    assert await store.get_by_key("alert", "a3", tenant_id="t1") is None


@pytest.mark.asyncio
async def test_update_merges_and_respects_tenant(store: MemoryDocumentStore) -> None:
    assert await store.update_by_key("alert", "a0", {"severity": "low"}, tenant_id="t2") is None
    updated = await store.update_by_key("alert", "a0", {"severity": "low"}, tenant_id="t1")
    assert updated["severity"] == "low"
    assert updated["rank"] == 0


@pytest.mark.asyncio
async def test_delete_is_tenant_scoped(store: MemoryDocumentStore) -> None:
    assert not await store.delete_by_key("alert", "a3", tenant_id="t1")
    assert await store.delete_by_key("alert", "a3", tenant_id="t2")
    assert await store.get_by_key("alert", "a3", tenant_id="t2") is None


@pytest.mark.asyncio
async def test_query_filters_sorts_and_paginates(store: MemoryDocumentStore) -> None:
    page = await store.query(
        "alert",
        StoreQuery(
            tenant_id="t1",
            filters=(Eq("severity", "high"),),
            sort=(SortSpec.from_value("-rank"),),
            offset=0,
            limit=1,
        ),
    )
    assert page.total == 2
    assert [doc["id"] for doc in page.items] == ["a2"]


@pytest.mark.asyncio
async def test_returned_documents_are_copies(store: MemoryDocumentStore) -> None:
    document = await store.get_by_key("alert", "a0", tenant_id="t1")
    document["severity"] = "mutated"
    assert (await store.get_by_key("alert", "a0", tenant_id="t1"))["severity"] == "high"


@pytest.mark.asyncio
async def test_disconnected_store_raises_connection_error() -> None:
    store = MemoryDocumentStore()
    with pytest.raises(StoreConnectionError):
        await store.get_by_key("alert", "a0", tenant_id="t1")


@pytest.mark.asyncio
async def test_health_check_reports_document_counts(store: MemoryDocumentStore) -> None:
    health = await store.health_check(timeout=0.5)
    assert health.status is HealthStatus.HEALTHY
    assert health.extra["connection_count"] == 1
    assert health.extra["documents"] == 4
