import asyncio

import pytest

from polystore.core.errors import StoreConnectionError
from polystore.core.filters import Range
from polystore.core.stores.cache import MemoryCacheStore
from polystore.core.stores.interfaces import HealthStatus, StoreQuery, cache_key


def test_cache_key_layout() -> None:
    assert cache_key("t1", "widget", "abc") == "t1:widget:abc"


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    cache = MemoryCacheStore()
    await cache.connect()
    await cache.put("widget", "w1", {"tenant_id": "t1", "name": "a"}, ttl_seconds=0.1)
    assert (await cache.get_by_key("widget", "w1", tenant_id="t1"))["name"] == "a"
    await asyncio.sleep(0.2)
    assert await cache.get_by_key("widget", "w1", tenant_id="t1") is None


@pytest.mark.asyncio
async def test_keys_are_tenant_scoped_and_prefixed() -> None:
    cache = MemoryCacheStore(key_prefix="app:")
    await cache.connect()
    await cache.put("widget", "w1", {"tenant_id": "t1", "name": "a"})
    assert await cache.get_by_key("widget", "w1", tenant_id="t2") is None
    assert "app:t1:widget:w1" in cache._entries


@pytest.mark.asyncio
async def test_update_and_delete() -> None:
    cache = MemoryCacheStore()
    await cache.connect()
    await cache.put("widget", "w1", {"tenant_id": "t1", "name": "a"})
    merged = await cache.update_by_key("widget", "w1", {"name": "b"}, tenant_id="t1")
    assert merged == {"tenant_id": "t1", "name": "b", "id": "w1"}
    assert await cache.delete_by_key("widget", "w1", tenant_id="t1")
    assert not await cache.delete_by_key("widget", "w1", tenant_id="t1")


@pytest.mark.asyncio
async def test_prefix_scan_query() -> None:
    cache = MemoryCacheStore()
    await cache.connect()
    for index in range(5):
        await cache.put("widget", f"w{index}", {"tenant_id": "t1", "size": index})
    await cache.put("widget", "other", {"tenant_id": "t2", "size": 3})
    await cache.put("gadget", "g1", {"tenant_id": "t1", "size": 3})

    page = await cache.query(
        "widget", StoreQuery(tenant_id="t1", filters=(Range("size", min=2),), limit=2)
    )
    assert page.total == 3
    assert len(page.items) == 2
    assert all(doc["tenant_id"] == "t1" for doc in page.items)


@pytest.mark.asyncio
async def test_publish_reaches_subscribed_handler() -> None:
    cache = MemoryCacheStore()
    await cache.connect()
    received: list[tuple[str, bytes]] = []

    async def handler(channel: str, message: bytes) -> None:
        received.append((channel, message))

    assert await cache.publish("ps:t1:alerts", b"x") == 0
    await cache.subscribe("ps:t1:alerts", handler)
    assert await cache.publish("ps:t1:alerts", b"y") == 1
    await cache.unsubscribe("ps:t1:alerts")
    assert await cache.publish("ps:t1:alerts", b"z") == 0
    assert received == [("ps:t1:alerts", b"y")]


@pytest.mark.asyncio
async def test_health_reports_key_count_and_memory() -> None:
    cache = MemoryCacheStore()
    await cache.connect()
    await cache.put("widget", "w1", {"tenant_id": "t1"})
    health = await cache.health_check(timeout=0.5)
    assert health.status is HealthStatus.HEALTHY
    assert health.extra["key_count"] == 1
    assert health.extra["memory_usage"] > 0


@pytest.mark.asyncio
async def test_closed_cache_is_unhealthy() -> None:
    cache = MemoryCacheStore()
    health = await cache.health_check(timeout=0.5)
    assert health.status is HealthStatus.UNHEALTHY
    with pytest.raises(StoreConnectionError):
        await cache.publish("ps:t1:alerts", b"x")
