import pytest
import pytest_asyncio

from polystore.core.filters import Eq, In, Range
from polystore.core.model import SortSpec
from polystore.core.stores.interfaces import StoreQuery
from polystore.core.stores.search import MemorySearchIndex, index_name, to_search_body


def test_index_name_is_lowercased_tenant_and_type() -> None:
    assert index_name("Acme", "ThreatActor") == "acme_threatactor"


def test_search_body_injects_tenant_as_must_clause() -> None:
    body = to_search_body(
        StoreQuery(
            tenant_id="t1",
            text="lazarus",
            filters=(Eq("region", "apac"), In("tier", (1, 2)), Range("score", min=3)),
            sort=(SortSpec.from_value("-score"),),
            offset=20,
            limit=10,
        )
    )
    assert body == {
        "query": {
            "bool": {
                "must": [
                    {"term": {"tenant_id": "t1"}},
                    {"multi_match": {"query": "lazarus", "fields": ["*"]}},
                ],
                "filter": [
                    {"term": {"region": "apac"}},
                    {"terms": {"tier": [1, 2]}},
                    {"range": {"score": {"gte": 3}}},
                ],
            }
        },
        "from": 20,
        "size": 10,
        "sort": [{"score": {"order": "desc"}}],
    }


@pytest_asyncio.fixture
async def index() -> MemorySearchIndex:
    index = MemorySearchIndex()
    await index.connect()
    documents = [
        ("a1", "t1", "Lazarus group phishing campaign", 8),
        ("a2", "t1", "Commodity phishing kit", 3),
        ("a3", "t1", "Ransomware lazarus lazarus", 5),
        ("a4", "t2", "Lazarus tooling", 9),
    ]
    for key, tenant, title, score in documents:
        await index.put("actor", key, {"tenant_id": tenant, "title": title, "score": score})
    return index


@pytest.mark.asyncio
async def test_text_query_ranks_by_token_hits(index: MemorySearchIndex) -> None:
    page = await index.query("actor", StoreQuery(tenant_id="t1", text="lazarus"))
    assert page.total == 2
    assert [doc["id"] for doc in page.items] == ["a3", "a1"]


@pytest.mark.asyncio
async def test_text_query_never_crosses_tenants(index: MemorySearchIndex) -> None:
    page = await index.query("actor", StoreQuery(tenant_id="t2", text="phishing"))
    assert page.total == 0


@pytest.mark.asyncio
async def test_filters_and_explicit_sort(index: MemorySearchIndex) -> None:
    page = await index.query(
        "actor",
        StoreQuery(
            tenant_id="t1",
            text="phishing",
            filters=(Range("score", max=8),),
            sort=(SortSpec.from_value("score"),),
        ),
    )
    assert [doc["id"] for doc in page.items] == ["a2", "a1"]


@pytest.mark.asyncio
async def test_update_and_delete(index: MemorySearchIndex) -> None:
    updated = await index.update_by_key("actor", "a2", {"score": 1}, tenant_id="t1")
    assert updated["score"] == 1
    assert await index.update_by_key("actor", "a2", {"score": 1}, tenant_id="t2") is None
    assert await index.delete_by_key("actor", "a2", tenant_id="t1")
    assert await index.get_by_key("actor", "a2", tenant_id="t1") is None


@pytest.mark.asyncio
async def test_health_reports_cluster_health(index: MemorySearchIndex) -> None:
    health = await index.health_check(timeout=0.5)
    assert health.extra["cluster_health"] == "green"
    assert health.extra["documents"] == 4
