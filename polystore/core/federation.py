"""
Federated persistence across the document, relational, cache and search stores.

The document store is canonical: its result decides whether an operation
succeeds. The cache and search index are mirrors kept up to date on a best
effort basis; their failures are logged and skipped, never surfaced. The
relational store takes no part in entity writes.

``FederationEngine.execute`` never raises. Every failure comes back as an
``OperationResult`` with ``success=False`` and an error message.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any

import ulid
from loguru import logger

from polystore.datastructures.type_aliases import Document, TenantId

from .config import PolystoreSettings
from .errors import (
    ConfigurationError,
    PolystoreError,
    StoreConnectionError,
    StoreTimeoutError,
    ValidationError,
)
from .model import (
    EntityRecord,
    OperationResult,
    OperationType,
    Pagination,
    PersistentOperation,
    QuerySpec,
    ResultMetadata,
    strip_reserved,
)
from .realtime.events import UpdateAction
from .realtime.publisher import FanoutPublisher
from .registry import ConnectionRegistry
from .stores.interfaces import QueryPage, StoreAdapter, StoreKind, StoreQuery
from .tenancy import TenantQuotas

CANONICAL_STORE = StoreKind.DOCUMENT

type Handler = Callable[[PersistentOperation, TenantId], Awaitable[OperationResult]]


class FederationEngine:
    """Routes persistent operations across the configured backing stores."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: PolystoreSettings,
        *,
        publisher: FanoutPublisher | None = None,
        quotas: TenantQuotas | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.publisher = publisher
        self.quotas = quotas or TenantQuotas(settings)
        self.operation_counts: Counter[str] = Counter()
        self.failure_counts: Counter[str] = Counter()
        self._handlers: dict[OperationType, Handler] = {
            OperationType.CREATE: self._create,
            OperationType.READ: self._read,
            OperationType.UPDATE: self._update,
            OperationType.DELETE: self._delete,
            OperationType.SEARCH: self._search,
        }

    def attach_publisher(self, publisher: FanoutPublisher | None) -> None:
        self.publisher = publisher

    async def execute(self, op: PersistentOperation) -> OperationResult:
        """Run one operation; failures are returned, never raised."""
        start = time.perf_counter()
        operation = getattr(op, "operation", None)
        label = operation.value if isinstance(operation, OperationType) else str(operation)
        tenant_id = getattr(op, "tenant_id", "") or ""
        try:
            tenant_id = self._resolve_tenant(op)
            self._validate(op)
            result = await self._handlers[op.operation](op, tenant_id)
        except PolystoreError as e:
            result = OperationResult.failure(str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure during {label} operation")
            result = OperationResult.failure(f"internal error during {label} operation: {e}")

        result.metadata.tenant_id = tenant_id
        result.metadata.query_time_ms = (time.perf_counter() - start) * 1000.0
        self.operation_counts[label] += 1
        if not result.success:
            self.failure_counts[label] += 1
            logger.info(f"{label} operation for tenant {tenant_id} failed: {result.error}")
        return result

    def _resolve_tenant(self, op: PersistentOperation) -> TenantId:
        tenant_id = op.tenant_id
        if not tenant_id:
            if self.settings.multi_tenant:
                raise ValidationError("tenant_id is required")
            tenant_id = self.settings.default_tenant_id
        if not isinstance(tenant_id, str) or ":" in tenant_id:
            raise ValidationError("tenant_id must be a string without ':'")
        return tenant_id

    def _validate(self, op: PersistentOperation) -> None:
        if not isinstance(op.operation, OperationType):
            raise ValidationError(f"Unsupported operation: {op.operation!r}")
        if not op.entity_type or ":" in op.entity_type:
            raise ValidationError("entity_type is required and must not contain ':'")
        match op.operation:
            case OperationType.READ | OperationType.UPDATE | OperationType.DELETE:
                if not op.entity_id:
                    raise ValidationError(
                        f"entity_id is required for {op.operation.value} operation"
                    )
        match op.operation:
            case OperationType.CREATE | OperationType.UPDATE:
                if not isinstance(op.data, Mapping):
                    raise ValidationError(f"data is required for {op.operation.value} operation")
            case OperationType.SEARCH:
                self._validate_query(op.query)

    def _validate_query(self, query: QuerySpec | None) -> None:
        if query is None:
            raise ValidationError("query is required for search operation")
        if query.page < 1:
            raise ValidationError("page must be >= 1")
        if query.limit is not None and not 1 <= query.limit <= self.settings.max_page_size:
            raise ValidationError(f"limit must be between 1 and {self.settings.max_page_size}")

    def _canonical(self, operation: OperationType) -> StoreAdapter:
        if not self.registry.is_configured(CANONICAL_STORE):
            raise ConfigurationError(
                f"{CANONICAL_STORE.value} store is not configured for {operation.value} operation"
            )
        if not self.registry.is_available(CANONICAL_STORE):
            raise StoreConnectionError(
                f"{CANONICAL_STORE.value} store unavailable for {operation.value} operation",
                store=CANONICAL_STORE.value,
            )
        return self.registry.get(CANONICAL_STORE)

    async def _call[T](self, kind: StoreKind, awaitable: Awaitable[T]) -> T:
        """Await one adapter call under the operation timeout."""
        timeout = self.settings.operation_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as e:
            raise StoreTimeoutError(
                f"{kind.value} store call timed out after {timeout}s", store=kind.value
            ) from e
        except StoreConnectionError as e:
            self.registry.mark_disconnected(kind, e)
            raise

    async def _mirror(
        self,
        kind: StoreKind,
        action: str,
        call: Callable[[StoreAdapter], Awaitable[Any]],
    ) -> bool:
        """Best-effort secondary store call; returns whether it took part."""
        if not self.registry.is_available(kind):
            logger.debug(f"Skipping {kind.value} {action}: store unavailable")
            return False
        try:
            await self._call(kind, call(self.registry.get(kind)))
        except Exception as e:
            logger.warning(f"Skipping {kind.value} {action}: {e}")
            return False
        return True

    async def _emit(self, action: UpdateAction, document: Document) -> None:
        if self.publisher is None or not self.settings.realtime_enabled:
            return
        try:
            await self.publisher.publish_entity_change(action, document)
        except Exception as e:
            logger.warning(
                f"Change event for {document.get('entity_type')} {document.get('id')} "
                f"not published: {e}"
            )

    def _owned(self, documents: list[Document], tenant_id: TenantId) -> list[Document]:
        owned = [doc for doc in documents if doc.get("tenant_id") == tenant_id]
        if len(owned) != len(documents):
            logger.error(
                f"Dropped {len(documents) - len(owned)} documents not owned by tenant {tenant_id}"
            )
        return owned

    async def _create(self, op: PersistentOperation, tenant_id: TenantId) -> OperationResult:
        self.quotas.check(tenant_id, op.entity_type)
        canonical = self._canonical(op.operation)
        now = time.time()
        record = EntityRecord(
            tenant_id=tenant_id,
            entity_type=op.entity_type,
            entity_id=str(ulid.new()),
            payload=strip_reserved(op.data or {}),
            created_at=now,
            updated_at=now,
        )
        document = record.to_document()
        await self._call(
            CANONICAL_STORE, canonical.put(op.entity_type, record.entity_id, document)
        )
        sources = [CANONICAL_STORE.value]

        if self.registry.is_configured(StoreKind.RELATIONAL):
            logger.debug("Relational store not written for entity create")

        cached, indexed = await asyncio.gather(
            self._mirror(
                StoreKind.CACHE,
                "cache put",
                lambda cache: cache.put(
                    op.entity_type,
                    record.entity_id,
                    document,
                    ttl_seconds=self.settings.cache_ttl_seconds,
                ),
            ),
            self._mirror(
                StoreKind.SEARCH,
                "search index put",
                lambda search: search.put(op.entity_type, record.entity_id, document),
            ),
        )
        if cached:
            sources.append(StoreKind.CACHE.value)
        if indexed:
            sources.append(StoreKind.SEARCH.value)

        self.quotas.increment(tenant_id, op.entity_type)
        logger.debug(
            "Created {} {} for tenant {} via {}",
            op.entity_type,
            record.entity_id,
            tenant_id,
            sources,
        )
        await self._emit(UpdateAction.CREATED, document)
        result = OperationResult.single(document)
        result.metadata = ResultMetadata(data_source=sources)
        return result

    async def _read(self, op: PersistentOperation, tenant_id: TenantId) -> OperationResult:
        entity_id = op.entity_id or ""
        if self.registry.is_available(StoreKind.CACHE):
            try:
                cached = await self._call(
                    StoreKind.CACHE,
                    self.registry.get(StoreKind.CACHE).get_by_key(
                        op.entity_type, entity_id, tenant_id=tenant_id
                    ),
                )
            except Exception as e:
                logger.warning(f"Cache lookup failed, reading canonical store: {e}")
                cached = None
            if cached is not None and cached.get("tenant_id") == tenant_id:
                logger.debug("Cache hit for {}:{}:{}", tenant_id, op.entity_type, entity_id)
                result = OperationResult.single(cached)
                result.metadata = ResultMetadata(
                    cache_hit=True, data_source=[StoreKind.CACHE.value]
                )
                return result

        canonical = self._canonical(op.operation)
        document = await self._call(
            CANONICAL_STORE,
            canonical.get_by_key(op.entity_type, entity_id, tenant_id=tenant_id),
        )
        sources = [CANONICAL_STORE.value]
        if document is not None and document.get("tenant_id") != tenant_id:
            document = None
        if document is None:
            result = OperationResult.single(None)
            result.metadata = ResultMetadata(data_source=sources)
            return result

        populated = await self._mirror(
            StoreKind.CACHE,
            "cache populate",
            lambda cache: cache.put(
                op.entity_type,
                entity_id,
                document,
                ttl_seconds=self.settings.cache_ttl_seconds,
            ),
        )
        if populated:
            sources.append(StoreKind.CACHE.value)
        result = OperationResult.single(document)
        result.metadata = ResultMetadata(data_source=sources)
        return result

    async def _update(self, op: PersistentOperation, tenant_id: TenantId) -> OperationResult:
        canonical = self._canonical(op.operation)
        entity_id = op.entity_id or ""
        changes = strip_reserved(op.data or {})
        changes["updated_at"] = time.time()
        updated = await self._call(
            CANONICAL_STORE,
            canonical.update_by_key(op.entity_type, entity_id, changes, tenant_id=tenant_id),
        )
        if updated is None:
            return OperationResult.failure(f"{op.entity_type} {entity_id} not found")
        sources = [CANONICAL_STORE.value]

        if await self._mirror(
            StoreKind.CACHE,
            "cache invalidate",
            lambda cache: cache.delete_by_key(op.entity_type, entity_id, tenant_id=tenant_id),
        ):
            sources.append(StoreKind.CACHE.value)
        if await self._mirror(
            StoreKind.SEARCH,
            "search index update",
            lambda search: search.put(op.entity_type, entity_id, updated),
        ):
            sources.append(StoreKind.SEARCH.value)

        logger.debug("Updated {} {} for tenant {}", op.entity_type, entity_id, tenant_id)
        await self._emit(UpdateAction.UPDATED, updated)
        result = OperationResult.single(updated)
        result.metadata = ResultMetadata(data_source=sources)
        return result

    async def _delete(self, op: PersistentOperation, tenant_id: TenantId) -> OperationResult:
        canonical = self._canonical(op.operation)
        entity_id = op.entity_id or ""
        deleted = await self._call(
            CANONICAL_STORE,
            canonical.delete_by_key(op.entity_type, entity_id, tenant_id=tenant_id),
        )
        if not deleted:
            return OperationResult.failure(f"{op.entity_type} {entity_id} not found")
        sources = [CANONICAL_STORE.value]

        if await self._mirror(
            StoreKind.CACHE,
            "cache delete",
            lambda cache: cache.delete_by_key(op.entity_type, entity_id, tenant_id=tenant_id),
        ):
            sources.append(StoreKind.CACHE.value)
        if await self._mirror(
            StoreKind.SEARCH,
            "search index delete",
            lambda search: search.delete_by_key(op.entity_type, entity_id, tenant_id=tenant_id),
        ):
            sources.append(StoreKind.SEARCH.value)

        self.quotas.decrement(tenant_id, op.entity_type)
        logger.debug("Deleted {} {} for tenant {}", op.entity_type, entity_id, tenant_id)
        tombstone = {"id": entity_id, "tenant_id": tenant_id, "entity_type": op.entity_type}
        await self._emit(UpdateAction.DELETED, tombstone)
        result = OperationResult(success=True, data=[tombstone], total=1)
        result.metadata = ResultMetadata(data_source=sources)
        return result

    async def _search(self, op: PersistentOperation, tenant_id: TenantId) -> OperationResult:
        query = op.query or QuerySpec()
        limit = query.limit or self.settings.default_page_size
        offset = (query.page - 1) * limit
        store_query = StoreQuery(
            tenant_id=tenant_id,
            filters=query.filters,
            text=query.search_text,
            sort=query.sort,
            offset=offset,
            limit=limit,
        )

        page: QueryPage | None = None
        sources: list[str] = []
        if query.search_text and self.registry.is_available(StoreKind.SEARCH):
            try:
                page = await self._call(
                    StoreKind.SEARCH,
                    self.registry.get(StoreKind.SEARCH).query(op.entity_type, store_query),
                )
                sources.append(StoreKind.SEARCH.value)
                logger.debug("Search for tenant {} routed to index", tenant_id)
            except Exception as e:
                logger.warning(f"Search index query failed, using canonical store: {e}")
                page = None

        if page is None:
            canonical = self._canonical(op.operation)
            page = await self._call(
                CANONICAL_STORE,
                canonical.query(op.entity_type, replace(store_query, text=None)),
            )
            sources.append(CANONICAL_STORE.value)

        documents = self._owned(page.items, tenant_id)
        result = OperationResult.page(
            documents, page.total, Pagination.for_page(query.page, limit, page.total)
        )
        result.metadata = ResultMetadata(data_source=sources)
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "operations": dict(self.operation_counts),
            "failures": dict(self.failure_counts),
            "available_stores": [kind.value for kind in self.registry.available_kinds()],
        }
