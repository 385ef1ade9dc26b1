"""
Subscription records and the registry that owns them.

Each subscription has a bounded queue drained by its own delivery task, so a
slow subscriber only ever backs up its own queue. The registry is the single
owner of subscription records; callers only ever hold the subscription id.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from threading import RLock

from loguru import logger

from polystore.core.errors import DeliveryError
from polystore.datastructures.type_aliases import (
    EventId,
    QualifiedChannelName,
    SubscriptionId,
    TenantId,
    Timestamp,
)

from .events import RealTimeUpdate, SubscriptionFilter

type UpdateCallback = Callable[[RealTimeUpdate], Awaitable[None] | None]
type EventPredicate = Callable[[RealTimeUpdate], bool]

_RECENT_EVENT_WINDOW = 256


@dataclass(slots=True)
class Subscription:
    """A tenant-scoped listener on a set of qualified channels."""

    subscription_id: SubscriptionId
    tenant_id: TenantId
    channels: frozenset[QualifiedChannelName]
    callback: UpdateCallback
    queue: asyncio.Queue[RealTimeUpdate]
    filter: SubscriptionFilter | EventPredicate | None = None
    active: bool = True
    created_at: Timestamp = field(default_factory=time.time)
    last_update: Timestamp | None = None
    delivered: int = 0
    dropped: int = 0
    failures: int = 0
    last_error: DeliveryError | None = None
    delivery_task: asyncio.Task[None] | None = None
    _recent_event_ids: deque[EventId] = field(
        default_factory=lambda: deque(maxlen=_RECENT_EVENT_WINDOW)
    )

    def accepts(self, event: RealTimeUpdate) -> bool:
        if self.filter is None:
            return True
        if isinstance(self.filter, SubscriptionFilter):
            return self.filter.matches(event)
        try:
            return bool(self.filter(event))
        except Exception as e:
            logger.error(f"Filter for subscription {self.subscription_id} failed: {e}")
            return False

    def offer(self, event: RealTimeUpdate) -> bool:
        """Enqueue an event unless already seen; drops the oldest when full."""
        if not self.active or event.event_id in self._recent_event_ids:
            return False
        self._recent_event_ids.append(event.event_id)
        if self.queue.full():
            self.queue.get_nowait()
            self.queue.task_done()
            self.dropped += 1
            logger.warning(
                "Subscription {} queue full, dropped oldest event", self.subscription_id
            )
        self.queue.put_nowait(event)
        return True

    async def run_delivery(self) -> None:
        """Deliver queued events to the callback until cancelled."""
        while True:
            event = await self.queue.get()
            try:
                if not self.active:
                    continue
                result = self.callback(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
                self.last_update = time.time()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                self.last_error = DeliveryError(
                    f"callback failed for event {event.event_id}: {e}",
                    subscription_id=self.subscription_id,
                )
                logger.error(f"Subscriber {self.subscription_id}: {self.last_error}")
            finally:
                self.queue.task_done()

    def close(self) -> None:
        """Stop accepting events and discard anything still queued."""
        self.active = False
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        if self.delivery_task is not None and not self.delivery_task.done():
            self.delivery_task.cancel()

    def stats(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "channels": sorted(self.channels),
            "active": self.active,
            "queued": self.queue.qsize(),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "failures": self.failures,
            "last_error": str(self.last_error) if self.last_error else None,
            "created_at": self.created_at,
            "last_update": self.last_update,
        }


class SubscriptionRegistry:
    """Thread-safe table of subscriptions with per-channel reference counts."""

    def __init__(self) -> None:
        self._subscriptions: dict[SubscriptionId, Subscription] = {}
        self._channel_refs: Counter[QualifiedChannelName] = Counter()
        self._lock = RLock()

    def add(self, subscription: Subscription) -> list[QualifiedChannelName]:
        """Register a subscription; returns channels that gained their first reference."""
        with self._lock:
            if subscription.subscription_id in self._subscriptions:
                raise ValueError(f"Duplicate subscription id {subscription.subscription_id}")
            self._subscriptions[subscription.subscription_id] = subscription
            acquired: list[QualifiedChannelName] = []
            for channel in sorted(subscription.channels):
                self._channel_refs[channel] += 1
                if self._channel_refs[channel] == 1:
                    acquired.append(channel)
            return acquired

    def remove(
        self, subscription_id: SubscriptionId
    ) -> tuple[Subscription | None, list[QualifiedChannelName]]:
        """Unregister a subscription; returns it and the channels now unreferenced."""
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            if subscription is None:
                return None, []
            subscription.active = False
            released: list[QualifiedChannelName] = []
            for channel in sorted(subscription.channels):
                self._channel_refs[channel] -= 1
                if self._channel_refs[channel] <= 0:
                    del self._channel_refs[channel]
                    released.append(channel)
            return subscription, released

    def get(self, subscription_id: SubscriptionId) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def match(
        self, tenant_id: TenantId, channel: QualifiedChannelName
    ) -> list[Subscription]:
        """Active subscriptions of ``tenant_id`` listening on ``channel``."""
        with self._lock:
            return [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.active
                and subscription.tenant_id == tenant_id
                and channel in subscription.channels
            ]

    def channel_refcount(self, channel: QualifiedChannelName) -> int:
        with self._lock:
            return self._channel_refs.get(channel, 0)

    def channels(self) -> list[QualifiedChannelName]:
        with self._lock:
            return sorted(self._channel_refs)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for sub in self._subscriptions.values() if sub.active)

    def active_for_tenant(self, tenant_id: TenantId) -> list[Subscription]:
        with self._lock:
            return [
                sub
                for sub in self._subscriptions.values()
                if sub.active and sub.tenant_id == tenant_id
            ]

    def all(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def clear(self) -> list[Subscription]:
        with self._lock:
            removed = list(self._subscriptions.values())
            for subscription in removed:
                subscription.active = False
            self._subscriptions.clear()
            self._channel_refs.clear()
            return removed
