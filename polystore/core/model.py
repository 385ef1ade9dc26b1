"""
Request and result values for the federation layer.

``PersistentOperation`` is built by request handlers and consumed once by the
``FederationEngine``; ``OperationResult`` is what comes back. Entity records
travel between stores in their document form (payload fields merged with the
reserved identity fields).
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from polystore.datastructures.type_aliases import (
    Document,
    DurationMilliseconds,
    EntityId,
    EntityType,
    PageNumber,
    PageSize,
    RecordOffset,
    TenantId,
    Timestamp,
    TotalCount,
)

from .filters import FilterExpr, parse_filters

RESERVED_FIELDS = frozenset({"id", "tenant_id", "entity_type", "created_at", "updated_at"})


class OperationType(StrEnum):
    """Logical operations understood by the federation engine."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True, slots=True)
class SortSpec:
    """Sort key for search results."""

    field: str
    direction: SortDirection = SortDirection.ASC

    @classmethod
    def from_value(cls, value: SortSpec | Mapping[str, Any] | str) -> SortSpec:
        """Accept ``SortSpec``, ``{"field": .., "direction": ..}`` or ``"-field"``."""
        if isinstance(value, SortSpec):
            return value
        if isinstance(value, str):
            if value.startswith("-"):
                return cls(value[1:], SortDirection.DESC)
            return cls(value)
        return cls(
            str(value["field"]),
            SortDirection(str(value.get("direction", "asc")).lower()),
        )

    @property
    def descending(self) -> bool:
        return self.direction is SortDirection.DESC


@dataclass(frozen=True, slots=True)
class QuerySpec:
    """Search request: optional free text, structured filters, sort and paging."""

    search_text: str | None = None
    filters: tuple[FilterExpr, ...] = ()
    sort: tuple[SortSpec, ...] = ()
    page: PageNumber = 1
    limit: PageSize | None = None

    @classmethod
    def build(
        cls,
        *,
        search_text: str | None = None,
        filters: Mapping[str, Any] | Iterable[FilterExpr] | None = None,
        sort: Iterable[SortSpec | Mapping[str, Any] | str] | None = None,
        page: PageNumber = 1,
        limit: PageSize | None = None,
    ) -> QuerySpec:
        return cls(
            search_text=search_text.strip() if search_text else None,
            filters=parse_filters(filters),
            sort=tuple(SortSpec.from_value(item) for item in sort or ()),
            page=page,
            limit=limit,
        )


@dataclass(frozen=True, slots=True)
class PersistentOperation:
    """A single federated request. Never mutated after construction."""

    operation: OperationType
    tenant_id: TenantId
    entity_type: EntityType
    entity_id: EntityId | None = None
    data: Mapping[str, Any] | None = None
    query: QuerySpec | None = None

    @classmethod
    def create(
        cls, tenant_id: TenantId, entity_type: EntityType, data: Mapping[str, Any]
    ) -> PersistentOperation:
        return cls(OperationType.CREATE, tenant_id, entity_type, data=data)

    @classmethod
    def read(
        cls, tenant_id: TenantId, entity_type: EntityType, entity_id: EntityId
    ) -> PersistentOperation:
        return cls(OperationType.READ, tenant_id, entity_type, entity_id=entity_id)

    @classmethod
    def update(
        cls,
        tenant_id: TenantId,
        entity_type: EntityType,
        entity_id: EntityId,
        data: Mapping[str, Any],
    ) -> PersistentOperation:
        return cls(
            OperationType.UPDATE, tenant_id, entity_type, entity_id=entity_id, data=data
        )

    @classmethod
    def delete(
        cls, tenant_id: TenantId, entity_type: EntityType, entity_id: EntityId
    ) -> PersistentOperation:
        return cls(OperationType.DELETE, tenant_id, entity_type, entity_id=entity_id)

    @classmethod
    def search(
        cls, tenant_id: TenantId, entity_type: EntityType, query: QuerySpec
    ) -> PersistentOperation:
        return cls(OperationType.SEARCH, tenant_id, entity_type, query=query)


def strip_reserved(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Drop identity fields a caller must not be able to overwrite."""
    return {key: value for key, value in payload.items() if key not in RESERVED_FIELDS}


@dataclass(slots=True)
class EntityRecord:
    """Tenant-scoped entity as held by every store."""

    tenant_id: TenantId
    entity_type: EntityType
    entity_id: EntityId
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: Timestamp = field(default_factory=time.time)
    updated_at: Timestamp = field(default_factory=time.time)

    def to_document(self) -> Document:
        return {
            **self.payload,
            "id": self.entity_id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> EntityRecord:
        return cls(
            tenant_id=document["tenant_id"],
            entity_type=document["entity_type"],
            entity_id=document["id"],
            payload=strip_reserved(document),
            created_at=float(document.get("created_at", 0.0)),
            updated_at=float(document.get("updated_at", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class Pagination:
    page: PageNumber
    limit: PageSize
    offset: RecordOffset
    total_pages: int

    @classmethod
    def for_page(cls, page: PageNumber, limit: PageSize, total: TotalCount) -> Pagination:
        return cls(
            page=page,
            limit=limit,
            offset=(page - 1) * limit,
            total_pages=math.ceil(total / limit) if limit > 0 else 0,
        )


@dataclass(slots=True)
class ResultMetadata:
    query_time_ms: DurationMilliseconds = 0.0
    cache_hit: bool = False
    data_source: list[str] = field(default_factory=list)
    tenant_id: TenantId = ""


@dataclass(slots=True)
class OperationResult:
    """Outcome of ``FederationEngine.execute``; failures never raise."""

    success: bool
    data: list[Document] = field(default_factory=list)
    total: TotalCount = 0
    has_more: bool = False
    pagination: Pagination | None = None
    error: str | None = None
    metadata: ResultMetadata = field(default_factory=ResultMetadata)

    @classmethod
    def single(cls, document: Document | None) -> OperationResult:
        if document is None:
            return cls(success=True)
        return cls(success=True, data=[document], total=1)

    @classmethod
    def page(
        cls, documents: list[Document], total: TotalCount, pagination: Pagination
    ) -> OperationResult:
        return cls(
            success=True,
            data=documents,
            total=total,
            has_more=pagination.offset + len(documents) < total,
            pagination=pagination,
        )

    @classmethod
    def failure(cls, error: str) -> OperationResult:
        return cls(success=False, error=error)

    @property
    def first(self) -> Document | None:
        return self.data[0] if self.data else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "total": self.total,
            "has_more": self.has_more,
            "metadata": {
                "query_time_ms": self.metadata.query_time_ms,
                "cache_hit": self.metadata.cache_hit,
                "data_source": list(self.metadata.data_source),
                "tenant_id": self.metadata.tenant_id,
            },
        }
        if self.pagination is not None:
            payload["pagination"] = {
                "page": self.pagination.page,
                "limit": self.pagination.limit,
                "offset": self.pagination.offset,
                "total_pages": self.pagination.total_pages,
            }
        if self.error is not None:
            payload["error"] = self.error
        return payload
