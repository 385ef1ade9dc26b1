"""
Tenant-scoped real-time fan-out over the cache's pub/sub channels.

Channel names are ``<prefix>:<tenant_id>:<channel>``. Every event is published
to each of its own channels and once more to the tenant's ``all-updates``
channel. Underlying cache subscriptions are reference counted, so a channel is
only released when its last local subscription goes away.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any, cast

import ulid
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from polystore.core.config import PolystoreSettings
from polystore.core.errors import (
    NotInitializedError,
    RealtimeDisabledError,
    StoreConnectionError,
    StoreTimeoutError,
    ValidationError,
)
from polystore.core.registry import ConnectionRegistry
from polystore.core.stores.interfaces import CacheAdapter, StoreKind
from polystore.core.task_manager import ManagedObject
from polystore.datastructures.type_aliases import (
    ChannelName,
    Document,
    QualifiedChannelName,
    ReceiverCount,
    SubscriptionId,
    TenantId,
)

from .events import RealTimeUpdate, SubscriptionFilter, UpdateAction
from .subscriptions import (
    EventPredicate,
    Subscription,
    SubscriptionRegistry,
    UpdateCallback,
)

ALL_UPDATES_CHANNEL = "all-updates"


def qualify_channel(prefix: str, tenant_id: TenantId, channel: ChannelName) -> QualifiedChannelName:
    return f"{prefix}:{tenant_id}:{channel}"


def split_channel(qualified: QualifiedChannelName) -> tuple[str, TenantId, ChannelName]:
    prefix, tenant_id, channel = qualified.split(":", 2)
    return prefix, tenant_id, channel


def entity_channels(document: Mapping[str, Any]) -> tuple[ChannelName, ...]:
    """Default channels for an entity change: its type and the entity itself."""
    entity_type = document["entity_type"]
    return (entity_type, f"{entity_type}:{document['id']}")


class FanoutPublisher(ManagedObject):
    """Publishes change events and delivers them to matching subscriptions."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: PolystoreSettings,
        *,
        subscriptions: SubscriptionRegistry | None = None,
    ) -> None:
        super().__init__(name="FanoutPublisher")
        self.registry = registry
        self.settings = settings
        self.subscriptions = subscriptions or SubscriptionRegistry()
        self.events_published = 0
        self.messages_received = 0
        self._started = False
        self._acquired_channels: set[QualifiedChannelName] = set()

    @property
    def started(self) -> bool:
        return self._started

    def channel_name(self, tenant_id: TenantId, channel: ChannelName) -> QualifiedChannelName:
        return qualify_channel(self.settings.channel_prefix, tenant_id, channel)

    def all_updates_channel(self, tenant_id: TenantId) -> QualifiedChannelName:
        return self.channel_name(tenant_id, ALL_UPDATES_CHANNEL)

    def _cache(self) -> CacheAdapter:
        adapter = self.registry.get(StoreKind.CACHE)
        if not self.registry.is_available(StoreKind.CACHE):
            raise StoreConnectionError(
                "cache store unavailable for real-time fan-out", store=StoreKind.CACHE.value
            )
        return cast(CacheAdapter, adapter)

    def _cache_if_available(self) -> CacheAdapter | None:
        if not self.registry.is_available(StoreKind.CACHE):
            return None
        return cast(CacheAdapter, self.registry.get(StoreKind.CACHE))

    async def start(self) -> None:
        if self._started:
            return
        self._cache()
        self._started = True
        logger.info("Fan-out publisher started (prefix={})", self.settings.channel_prefix)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for subscription in self.subscriptions.clear():
            subscription.close()
        cache = self._cache_if_available()
        if cache is not None:
            for channel in sorted(self._acquired_channels):
                try:
                    await cache.unsubscribe(channel)
                except StoreConnectionError as e:
                    logger.warning(f"Releasing channel {channel} on stop failed: {e}")
        self._acquired_channels.clear()
        await self.shutdown()
        logger.info("Fan-out publisher stopped")

    def _require_started(self) -> None:
        if not self._started:
            raise NotInitializedError(
                "fan-out publisher is not initialized; call start() first",
                store=StoreKind.CACHE.value,
            )

    async def _cache_call(self, awaitable: Any) -> Any:
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self.settings.operation_timeout_seconds
            )
        except TimeoutError as e:
            raise StoreTimeoutError(
                f"cache call timed out after {self.settings.operation_timeout_seconds}s",
                store=StoreKind.CACHE.value,
            ) from e
        except StoreConnectionError as e:
            self.registry.mark_disconnected(StoreKind.CACHE, e)
            raise

    async def publish(self, event: RealTimeUpdate) -> ReceiverCount:
        """Publish an event; returns the number of receivers reported by the cache."""
        if not self.settings.realtime_enabled:
            logger.debug("Real-time disabled, not publishing event {}", event.event_id)
            return 0
        if event.tenant_id in self.settings.disabled_realtime_tenants:
            logger.debug("Real-time disabled for tenant {}", event.tenant_id)
            return 0

        cache = self._cache()
        channels = list(dict.fromkeys(event.channels))
        if ALL_UPDATES_CHANNEL not in channels:
            channels.append(ALL_UPDATES_CHANNEL)
        payload = event.to_bytes()

        receivers = 0
        for channel in channels:
            receivers += await self._cache_call(
                cache.publish(self.channel_name(event.tenant_id, channel), payload)
            )
        self.events_published += 1
        logger.debug(
            "Published {} {} for {} on {} channels ({} receivers)",
            event.entity_type,
            event.action.value,
            event.tenant_id,
            len(channels),
            receivers,
        )
        return receivers

    async def publish_entity_change(
        self,
        action: UpdateAction,
        document: Document,
        *,
        channels: Iterable[ChannelName] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReceiverCount:
        event = RealTimeUpdate(
            action=action,
            tenant_id=document["tenant_id"],
            entity_id=document["id"],
            entity_type=document["entity_type"],
            data=dict(document),
            source=self.settings.event_source,
            channels=tuple(channels) if channels is not None else entity_channels(document),
            metadata=metadata,
        )
        return await self.publish(event)

    async def subscribe(
        self,
        tenant_id: TenantId,
        channels: Iterable[ChannelName],
        callback: UpdateCallback,
        filter: SubscriptionFilter | Mapping[str, Any] | EventPredicate | None = None,
    ) -> SubscriptionId:
        self._require_started()
        if not tenant_id or ":" in tenant_id:
            raise ValidationError("tenant_id must be non-empty and must not contain ':'")
        if not self.settings.realtime_enabled:
            raise RealtimeDisabledError("real-time updates are disabled")
        if tenant_id in self.settings.disabled_realtime_tenants:
            raise RealtimeDisabledError(f"real-time updates are disabled for tenant {tenant_id}")
        requested = list(dict.fromkeys(channels))
        if not requested:
            raise ValidationError("at least one channel is required")

        if isinstance(filter, Mapping):
            filter = SubscriptionFilter.from_dict(filter)

        cache = self._cache()
        subscription = Subscription(
            subscription_id=str(ulid.new()),
            tenant_id=tenant_id,
            channels=frozenset(self.channel_name(tenant_id, name) for name in requested),
            callback=callback,
            queue=asyncio.Queue(maxsize=self.settings.subscriber_queue_size),
            filter=filter,
        )
        acquired = self.subscriptions.add(subscription)
        try:
            for channel in acquired:
                await self._cache_call(cache.subscribe(channel, self._on_message))
                self._acquired_channels.add(channel)
        except StoreConnectionError:
            _, released = self.subscriptions.remove(subscription.subscription_id)
            await self._release(released)
            raise

        subscription.delivery_task = self.create_task(
            subscription.run_delivery(), name=f"deliver-{subscription.subscription_id}"
        )
        logger.debug(
            "Subscription {} for tenant {} on {}",
            subscription.subscription_id,
            tenant_id,
            ", ".join(requested),
        )
        return subscription.subscription_id

    async def unsubscribe(self, subscription_id: SubscriptionId) -> bool:
        self._require_started()
        subscription, released = self.subscriptions.remove(subscription_id)
        if subscription is None:
            return False
        subscription.close()
        if subscription.delivery_task is not None:
            await asyncio.gather(subscription.delivery_task, return_exceptions=True)
        await self._release(released)
        logger.debug("Subscription {} removed", subscription_id)
        return True

    async def _release(self, channels: list[QualifiedChannelName]) -> None:
        cache = self._cache_if_available()
        for channel in channels:
            self._acquired_channels.discard(channel)
            if cache is None:
                continue
            try:
                await self._cache_call(cache.unsubscribe(channel))
            except StoreConnectionError as e:
                logger.warning(f"Releasing channel {channel} failed: {e}")

    async def resubscribe(self) -> int:
        """Re-register every referenced channel after the cache reconnected."""
        self._require_started()
        cache = self._cache()
        channels = self.subscriptions.channels()
        for channel in channels:
            await self._cache_call(cache.subscribe(channel, self._on_message))
        self._acquired_channels = set(channels)
        logger.info("Re-subscribed {} channels", len(channels))
        return len(channels)

    async def _on_message(self, channel: QualifiedChannelName, raw: bytes) -> None:
        self.messages_received += 1
        try:
            event = RealTimeUpdate.from_bytes(raw)
        except (PydanticValidationError, ValueError) as e:
            logger.warning(f"Discarding malformed event on {channel}: {e}")
            return
        _, tenant_id, _ = split_channel(channel)
        if event.tenant_id != tenant_id:
            logger.warning(
                f"Discarding event for tenant {event.tenant_id} received on {channel}"
            )
            return
        for subscription in self.subscriptions.match(tenant_id, channel):
            if subscription.accepts(event):
                subscription.offer(event)

    async def flush(self) -> None:
        """Wait until every active subscription queue has been drained."""
        await asyncio.gather(
            *(sub.queue.join() for sub in self.subscriptions.all() if sub.active)
        )

    def stats(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "events_published": self.events_published,
            "messages_received": self.messages_received,
            "active_subscriptions": self.subscriptions.active_count(),
            "channels": self.subscriptions.channels(),
            "background_tasks": self.background_tasks(),
            "subscriptions": {
                sub.subscription_id: sub.stats() for sub in self.subscriptions.all()
            },
        }
