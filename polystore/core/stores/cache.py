"""
In-process cache store with TTL entries and channel publish/subscribe.

Values are held as serialized bytes so the cache behaves like a remote cache
(callers always get a fresh copy). Expired entries are evicted lazily on
access and during prefix scans.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from loguru import logger

from polystore.core.filters import matches_all
from polystore.core.serialization import JsonSerializer
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


class MemoryCacheStore(BaseStoreAdapter):
    """TTL cache plus pub/sub for development, tests and single-process use."""

    kind = StoreKind.CACHE

    def __init__(self, *, key_prefix: str = "") -> None:
        super().__init__()
        self.key_prefix = key_prefix
        self.serializer = JsonSerializer()
        self._entries: dict[str, tuple[bytes, float | None]] = {}
        self._handlers: dict[ChannelName, MessageHandler] = {}

    async def connect(self) -> None:
        self.connected = True
        logger.debug("MemoryCacheStore connected")

    async def close(self) -> None:
        self.connected = False
        self._entries.clear()
        self._handlers.clear()

    async def health_extra(self) -> dict[str, Any]:
        self._evict_expired()
        return {
            "key_count": len(self._entries),
            "memory_usage": sum(len(value) for value, _ in self._entries.values()),
            "channels": len(self._handlers),
        }

    def _key(self, tenant_id: TenantId, collection: CollectionName, key: EntityId) -> str:
        return f"{self.key_prefix}{cache_key(tenant_id, collection, key)}"

    def _load(self, storage_key: str) -> Document | None:
        entry = self._entries.get(storage_key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.time() >= expires_at:
            self._entries.pop(storage_key, None)
            return None
        return self.serializer.deserialize(value)

    def _evict_expired(self) -> None:
        now = time.time()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            self._entries.pop(key, None)

    async def put(
        self,
        collection: CollectionName,
        key: EntityId,
        document: Document,
        *,
        ttl_seconds: DurationSeconds | None = None,
    ) -> None:
        self._require_connected()
        if "tenant_id" not in document:
            raise ValueError("documents must carry a tenant_id")
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        storage_key = self._key(document["tenant_id"], collection, key)
        self._entries[storage_key] = (
            self.serializer.serialize({**document, "id": key}),
            expires_at,
        )

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None:
        self._require_connected()
        document = self._load(self._key(tenant_id, collection, key))
        if document is None or document.get("tenant_id") != tenant_id:
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
        self._require_connected()
        storage_key = self._key(tenant_id, collection, key)
        document = self._load(storage_key)
        if document is None or document.get("tenant_id") != tenant_id:
            return None
        merged = {**document, **changes}
        # Updates keep the remaining TTL.
        _, expires_at = self._entries[storage_key]
        self._entries[storage_key] = (self.serializer.serialize(merged), expires_at)
        return merged

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool:
        self._require_connected()
        return self._entries.pop(self._key(tenant_id, collection, key), None) is not None

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage:
        self._require_connected()
        self._evict_expired()
        prefix = f"{self.key_prefix}{query.tenant_id}:{collection}:"
        scoped = query.scoped_filters()
        matched = [
            document
            for key, (value, _) in self._entries.items()
            if key.startswith(prefix)
            for document in (self.serializer.deserialize(value),)
            if matches_all(document, scoped)
        ]
        ordered = apply_sort(matched, query.sort)
        return QueryPage(
            items=paginate(ordered, query.offset, query.limit), total=len(matched)
        )

    async def publish(self, channel: ChannelName, message: bytes) -> ReceiverCount:
        self._require_connected()
        handler = self._handlers.get(channel)
        if handler is None:
            return 0
        await handler(channel, message)
        return 1

    async def subscribe(self, channel: ChannelName, handler: MessageHandler) -> None:
        self._require_connected()
        self._handlers[channel] = handler
        logger.debug("Cache subscribed to channel {}", channel)

    async def unsubscribe(self, channel: ChannelName) -> None:
        self._require_connected()
        self._handlers.pop(channel, None)
        logger.debug("Cache unsubscribed from channel {}", channel)

    def subscribed_channels(self) -> set[ChannelName]:
        return set(self._handlers)
