"""
In-process document store.

Collections hold documents keyed by entity id. Structured filters are first
translated into a Mongo-style filter document (``{"field": {"$in": [...]}}``)
and that native form is what gets evaluated, so the translation is exercised on
every query exactly as it would be against a real document database.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from typing import Any

from loguru import logger

from polystore.core.filters import Eq, In, Range, is_missing, resolve_field
from polystore.datastructures.type_aliases import (
    CollectionName,
    Document,
    DurationSeconds,
    EntityId,
    TenantId,
)

from .interfaces import (
    BaseStoreAdapter,
    QueryPage,
    StoreKind,
    StoreQuery,
    apply_sort,
    paginate,
)


def to_mongo_filter(query: StoreQuery) -> dict[str, Any]:
    """Translate a store query into a Mongo-style filter document."""
    mongo: dict[str, Any] = {}
    for expr in query.scoped_filters():
        field_name = "_id" if expr.field == "id" else expr.field
        match expr:
            case Eq(value=value):
                clause: Any = value
            case In(values=values):
                clause = {"$in": list(values)}
            case Range(min=low, max=high):
                clause = {}
                if low is not None:
                    clause["$gte"] = low
                if high is not None:
                    clause["$lte"] = high
        if field_name in mongo:
            mongo.setdefault("$and", []).append({field_name: clause})
        else:
            mongo[field_name] = clause
    return mongo


def _operator_matches(actual: Any, operator: str, operand: Any) -> bool:
    if operator == "$in":
        if isinstance(actual, list):
            return any(item in operand for item in actual)
        return actual in operand
    if actual is None or isinstance(actual, bool):
        return False
    try:
        if operator == "$gte":
            return actual >= operand
        if operator == "$lte":
            return actual <= operand
    except TypeError:
        return False
    logger.warning(f"Unknown filter operator: '{operator}'")
    return False


def mongo_matches(document: Mapping[str, Any], mongo_filter: Mapping[str, Any]) -> bool:
    """Evaluate a Mongo-style filter document against a stored document."""
    for field_name, clause in mongo_filter.items():
        if field_name == "$and":
            if not all(mongo_matches(document, sub) for sub in clause):
                return False
            continue
        actual = resolve_field(document, "id" if field_name == "_id" else field_name)
        if is_missing(actual):
            return False
        if isinstance(clause, dict) and clause and all(
            key.startswith("$") for key in clause
        ):
            if not all(
                _operator_matches(actual, op, operand) for op, operand in clause.items()
            ):
                return False
        elif isinstance(actual, list) and not isinstance(clause, list):
            if clause not in actual:
                return False
        elif actual != clause:
            return False
    return True


class MemoryDocumentStore(BaseStoreAdapter):
    """In-memory document store for development, tests and single-node use."""

    kind = StoreKind.DOCUMENT

    def __init__(self) -> None:
        super().__init__()
        self._collections: dict[CollectionName, dict[EntityId, Document]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self.connected = True
        logger.debug("MemoryDocumentStore connected")

    async def close(self) -> None:
        self.connected = False

    def translate_filters(self, query: StoreQuery) -> dict[str, Any]:
        return to_mongo_filter(query)

    async def health_extra(self) -> dict[str, Any]:
        return {
            "connection_count": 1,
            "collections": len(self._collections),
            "documents": sum(len(docs) for docs in self._collections.values()),
        }

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
        async with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(
                {**document, "id": key}
            )

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None:
        self._require_connected()
        document = self._collections.get(collection, {}).get(key)
        if document is None or document.get("tenant_id") != tenant_id:
            return None
        return copy.deepcopy(document)

    async def update_by_key(
        self,
        collection: CollectionName,
        key: EntityId,
        changes: Mapping[str, Any],
        *,
        tenant_id: TenantId,
    ) -> Document | None:
        self._require_connected()
        async with self._lock:
            document = self._collections.get(collection, {}).get(key)
            if document is None or document.get("tenant_id") != tenant_id:
                return None
            document.update(copy.deepcopy(dict(changes)))
            return copy.deepcopy(document)

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool:
        self._require_connected()
        async with self._lock:
            documents = self._collections.get(collection, {})
            document = documents.get(key)
            if document is None or document.get("tenant_id") != tenant_id:
                return False
            del documents[key]
            return True

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage:
        self._require_connected()
        mongo_filter = self.translate_filters(query)
        matched = [
            document
            for document in self._collections.get(collection, {}).values()
            if mongo_matches(document, mongo_filter)
        ]
        ordered = apply_sort(matched, query.sort)
        page = paginate(ordered, query.offset, query.limit)
        return QueryPage(items=copy.deepcopy(page), total=len(matched))

