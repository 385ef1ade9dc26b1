"""
Redis-backed cache store.

Entries are JSON blobs under ``<key_prefix><tenant>:<collection>:<id>`` with a
native Redis TTL. Channel subscriptions share one ``PubSub`` connection whose
messages are drained by a single background reader task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from typing import Any

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from polystore.core.errors import StoreConnectionError
from polystore.core.filters import matches_all
from polystore.core.serialization import JsonSerializer
from polystore.core.task_manager import ManagedObject
from polystore.datastructures.type_aliases import (
    ChannelName,
    CollectionName,
    Document,
    DurationSeconds,
    EntityId,
    ReceiverCount,
    TenantId,
)

from .interfaces import (
    BaseStoreAdapter,
    MessageHandler,
    QueryPage,
    StoreKind,
    StoreQuery,
    apply_sort,
    cache_key,
    paginate,
)

_READER_POLL_SECONDS = 1.0
_SCAN_BATCH = 500


class RedisCacheStore(BaseStoreAdapter, ManagedObject):
    """Cache adapter over ``redis.asyncio`` with pub/sub support."""

    kind = StoreKind.CACHE

    def __init__(
        self,
        url: str,
        *,
        key_prefix: str = "",
        pool_size: int = 10,
        connect_timeout_seconds: DurationSeconds = 5.0,
        client: redis.Redis | None = None,
    ) -> None:
        BaseStoreAdapter.__init__(self)
        ManagedObject.__init__(self, name="RedisCacheStore")
        self.url = url
        self.key_prefix = key_prefix
        self.pool_size = pool_size
        self.connect_timeout_seconds = connect_timeout_seconds
        self.serializer = JsonSerializer()
        self._client = client
        self._pubsub: redis.client.PubSub | None = None
        self._handlers: dict[ChannelName, MessageHandler] = {}
        self._reader: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                socket_connect_timeout=self.connect_timeout_seconds,
                max_connections=self.pool_size,
            )
        await self._call(self._client.ping())
        self.connected = True
        logger.info("Redis cache connected")

    async def close(self) -> None:
        self.connected = False
        await self.shutdown()
        self._reader = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        self._handlers.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> None:
        await self._call(self._redis().ping())

    async def health_extra(self) -> dict[str, Any]:
        client = self._redis()
        info = await self._call(client.info("memory"))
        return {
            "key_count": await self._call(client.dbsize()),
            "memory_usage": info.get("used_memory", 0),
            "channels": len(self._handlers),
        }

    def _redis(self) -> redis.Redis:
        self._require_connected()
        if self._client is None:
            raise StoreConnectionError("redis client not created", store=self.kind.value)
        return self._client

    async def _call[T](self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as e:
            raise StoreConnectionError(
                f"redis call failed: {e}", store=self.kind.value
            ) from e

    def _key(self, tenant_id: TenantId, collection: CollectionName, key: EntityId) -> str:
        return f"{self.key_prefix}{cache_key(tenant_id, collection, key)}"

    async def put(
        self,
        collection: CollectionName,
        key: EntityId,
        document: Document,
        *,
        ttl_seconds: DurationSeconds | None = None,
    ) -> None:
        if "tenant_id" not in document:
            raise ValueError("documents must carry a tenant_id")
        client = self._redis()
        payload = self.serializer.serialize({**document, "id": key})
        storage_key = self._key(document["tenant_id"], collection, key)
        if ttl_seconds:
            await self._call(client.set(storage_key, payload, ex=max(1, int(ttl_seconds))))
        else:
            await self._call(client.set(storage_key, payload))

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None:
        raw = await self._call(self._redis().get(self._key(tenant_id, collection, key)))
        if raw is None:
            return None
        document = self.serializer.deserialize(raw)
        if document.get("tenant_id") != tenant_id:
            return None
        return document

    async def update_by_key(
        self,
        collection: CollectionName,
        key: EntityId,
        changes: Mapping[str, Any],
        *,
        tenant_id: TenantId,
    ) -> Document | None:
        document = await self.get_by_key(collection, key, tenant_id=tenant_id)
        if document is None:
            return None
        merged = {**document, **changes}
        await self._call(
            self._redis().set(
                self._key(tenant_id, collection, key),
                self.serializer.serialize(merged),
                keepttl=True,
            )
        )
        return merged

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool:
        removed = await self._call(
            self._redis().delete(self._key(tenant_id, collection, key))
        )
        return bool(removed)

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage:
        client = self._redis()
        pattern = f"{self.key_prefix}{query.tenant_id}:{collection}:*"
        keys: list[bytes] = []
        try:
            async for storage_key in client.scan_iter(match=pattern, count=_SCAN_BATCH):
                keys.append(storage_key)
        except RedisError as e:
            raise StoreConnectionError(
                f"redis scan failed: {e}", store=self.kind.value
            ) from e
        scoped = query.scoped_filters()
        matched: list[Document] = []
        for start in range(0, len(keys), _SCAN_BATCH):
            values = await self._call(client.mget(keys[start : start + _SCAN_BATCH]))
            for raw in values:
                if raw is None:
                    continue
                document = self.serializer.deserialize(raw)
                if matches_all(document, scoped):
                    matched.append(document)
        ordered = apply_sort(matched, query.sort)
        return QueryPage(
            items=paginate(ordered, query.offset, query.limit), total=len(matched)
        )

    async def publish(self, channel: ChannelName, message: bytes) -> ReceiverCount:
        return int(await self._call(self._redis().publish(channel, message)))

    async def subscribe(self, channel: ChannelName, handler: MessageHandler) -> None:
        client = self._redis()
        if self._pubsub is None:
            self._pubsub = client.pubsub()
        await self._call(self._pubsub.subscribe(channel))
        self._handlers[channel] = handler
        if self._reader is None or self._reader.done():
            self._reader = self.create_task(self._read_messages(), name="redis-pubsub-reader")
        logger.debug("Redis subscribed to channel {}", channel)

    async def unsubscribe(self, channel: ChannelName) -> None:
        self._require_connected()
        self._handlers.pop(channel, None)
        if self._pubsub is not None:
            await self._call(self._pubsub.unsubscribe(channel))
        logger.debug("Redis unsubscribed from channel {}", channel)

    async def _read_messages(self) -> None:
        while self.connected and self._pubsub is not None:
            if not self._pubsub.subscribed:
                await asyncio.sleep(0.1)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=_READER_POLL_SECONDS
                )
            except RedisError as e:
                logger.error(f"Redis pub/sub reader stopped: {e}")
                self.connected = False
                return
            if message is None or message.get("type") != "message":
                continue
            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()
            handler = self._handlers.get(channel)
            if handler is None:
                continue
            try:
                await handler(channel, message["data"])
            except Exception as e:
                logger.error(f"Handler for channel {channel} failed: {e}")
