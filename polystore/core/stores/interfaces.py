"""
Store adapter interfaces for polystore.

Every backing store is reached through the same verb set (``put``,
``get_by_key``, ``update_by_key``, ``delete_by_key``, ``query``) regardless of
its native access pattern. Translating filters and sorts into the store's own
query language is the adapter's job; the federation engine only ever hands
over a ``StoreQuery``.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from polystore.core.errors import StoreConnectionError
from polystore.core.filters import Eq, FilterExpr, is_missing, resolve_field
from polystore.core.model import SortSpec
from polystore.datastructures.type_aliases import (
    CacheKeyString,
    ChannelName,
    CollectionName,
    Document,
    DurationSeconds,
    EntityId,
    LatencyMs,
    ReceiverCount,
    TenantId,
    Timestamp,
)

type MessageHandler = Callable[[ChannelName, bytes], Awaitable[None]]


class StoreKind(StrEnum):
    """Backing store kinds known to the federation layer."""

    DOCUMENT = "document"
    RELATIONAL = "relational"
    CACHE = "cache"
    SEARCH = "search"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True, slots=True)
class StoreHealth:
    """Result of a single bounded health probe."""

    status: HealthStatus
    response_time_ms: LatencyMs
    extra: dict[str, Any] = field(default_factory=dict)
    checked_at: Timestamp = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


@dataclass(frozen=True, slots=True)
class StoreQuery:
    """Tenant-scoped structured query handed to an adapter."""

    tenant_id: TenantId
    filters: tuple[FilterExpr, ...] = ()
    text: str | None = None
    sort: tuple[SortSpec, ...] = ()
    offset: int = 0
    limit: int | None = None

    def scoped_filters(self) -> tuple[FilterExpr, ...]:
        """Filters with the mandatory tenant clause first."""
        return (Eq("tenant_id", self.tenant_id), *self.filters)


@dataclass(frozen=True, slots=True)
class QueryPage:
    items: list[Document]
    total: int


def cache_key(tenant_id: TenantId, collection: CollectionName, key: EntityId) -> CacheKeyString:
    """Composite cache key ``tenant:entity_type:entity_id``."""
    return f"{tenant_id}:{collection}:{key}"


def _sort_value(value: Any) -> tuple[int, Any]:
    if isinstance(value, bool | int | float):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, repr(value))


def apply_sort(documents: list[Document], sort: tuple[SortSpec, ...]) -> list[Document]:
    """Stable multi-key sort; documents missing a sort field go last."""
    ordered = list(documents)
    for spec in reversed(sort):
        present = [doc for doc in ordered if not is_missing(resolve_field(doc, spec.field))]
        missing = [doc for doc in ordered if is_missing(resolve_field(doc, spec.field))]
        present.sort(
            key=lambda doc: _sort_value(resolve_field(doc, spec.field)),
            reverse=spec.descending,
        )
        ordered = present + missing
    return ordered


def paginate(documents: list[Document], offset: int, limit: int | None) -> list[Document]:
    if limit is None:
        return documents[offset:]
    return documents[offset : offset + limit]


@runtime_checkable
class StoreAdapter(Protocol):
    """Uniform verb set shared by all store adapters."""

    kind: StoreKind

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def health_check(self, timeout: DurationSeconds) -> StoreHealth: ...

    async def put(
        self,
        collection: CollectionName,
        key: EntityId,
        document: Document,
        *,
        ttl_seconds: DurationSeconds | None = None,
    ) -> None: ...

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None: ...

    async def update_by_key(
        self,
        collection: CollectionName,
        key: EntityId,
        changes: Mapping[str, Any],
        *,
        tenant_id: TenantId,
    ) -> Document | None: ...

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool: ...

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage: ...


class DocumentStoreAdapter(StoreAdapter, Protocol):
    """Canonical document store; native filter form is a Mongo-style dict."""

    def translate_filters(self, query: StoreQuery) -> dict[str, Any]: ...


class RelationalStoreAdapter(StoreAdapter, Protocol):
    """Structured store; native filter form is a parameterised SQL WHERE."""

    def translate_filters(self, query: StoreQuery) -> tuple[str, list[Any]]: ...


class CacheAdapter(StoreAdapter, Protocol):
    """Low-latency cache that also provides channel publish/subscribe."""

    async def publish(self, channel: ChannelName, message: bytes) -> ReceiverCount: ...

    async def subscribe(self, channel: ChannelName, handler: MessageHandler) -> None: ...

    async def unsubscribe(self, channel: ChannelName) -> None: ...


class SearchAdapter(StoreAdapter, Protocol):
    """Full-text index; native query form is an ES-style bool query."""

    def translate_query(self, collection: CollectionName, query: StoreQuery) -> dict[str, Any]: ...


class BaseStoreAdapter(ABC):
    """Shared connection-state handling and bounded health probing."""

    kind: StoreKind

    def __init__(self) -> None:
        self.connected = False

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def ping(self) -> None:
        self._require_connected()

    async def health_extra(self) -> dict[str, Any]:
        return {}

    async def health_check(self, timeout: DurationSeconds) -> StoreHealth:
        """Probe the store; never blocks longer than ``timeout``."""
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self.ping(), timeout=timeout)
            extra = await asyncio.wait_for(self.health_extra(), timeout=timeout)
        except TimeoutError:
            logger.warning(f"{self.kind.value} store health probe timed out after {timeout}s")
            return StoreHealth(
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - start) * 1000.0,
                extra={"error": "timeout"},
            )
        except Exception as e:
            return StoreHealth(
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - start) * 1000.0,
                extra={"error": str(e)},
            )
        return StoreHealth(
            status=HealthStatus.HEALTHY,
            response_time_ms=(time.perf_counter() - start) * 1000.0,
            extra=extra,
        )

    def _require_connected(self) -> None:
        if not self.connected:
            raise StoreConnectionError(
                f"{self.kind.value} store is not connected", store=self.kind.value
            )
