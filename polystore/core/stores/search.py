"""
In-process full-text search index.

Each tenant/entity type pair gets its own index (``tenant_entitytype``,
lowercased). Queries are translated into an Elasticsearch-style bool body and
that body is evaluated directly: ``must`` holds the tenant term and the
``multi_match`` text clause, ``filter`` holds ``term``/``terms``/``range``.
"""

from __future__ import annotations

import asyncio
import copy
import re
from collections.abc import Iterator, Mapping
from typing import Any

from loguru import logger

from polystore.core.filters import Eq, In, Range, is_missing, resolve_field
from polystore.datastructures.type_aliases import (
    CollectionName,
    Document,
    DurationSeconds,
    EntityId,
    EntityType,
    IndexName,
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

_TOKEN_PATTERN = re.compile(r"\w+")


def index_name(tenant_id: TenantId, entity_type: EntityType) -> IndexName:
    return f"{tenant_id}_{entity_type}".lower()


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def _text_values(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _text_values(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from _text_values(item)


def to_search_body(query: StoreQuery) -> dict[str, Any]:
    """Translate a store query into an ES-style search body."""
    must: list[dict[str, Any]] = [{"term": {"tenant_id": query.tenant_id}}]
    if query.text:
        must.append({"multi_match": {"query": query.text, "fields": ["*"]}})
    filters: list[dict[str, Any]] = []
    for expr in query.filters:
        match expr:
            case Eq(field=name, value=value):
                filters.append({"term": {name: value}})
            case In(field=name, values=values):
                filters.append({"terms": {name: list(values)}})
            case Range(field=name, min=low, max=high):
                bounds: dict[str, Any] = {}
                if low is not None:
                    bounds["gte"] = low
                if high is not None:
                    bounds["lte"] = high
                filters.append({"range": {name: bounds}})
    body: dict[str, Any] = {
        "query": {"bool": {"must": must, "filter": filters}},
        "from": query.offset,
    }
    if query.limit is not None:
        body["size"] = query.limit
    if query.sort:
        body["sort"] = [
            {spec.field: {"order": spec.direction.value}} for spec in query.sort
        ]
    return body


def _term_matches(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list):
        return expected in actual
    return actual == expected


def _clause_matches(document: Mapping[str, Any], clause: Mapping[str, Any]) -> bool:
    kind, spec = next(iter(clause.items()))
    if kind == "multi_match":
        return True
    name, operand = next(iter(spec.items()))
    actual = resolve_field(document, name)
    if is_missing(actual):
        return False
    if kind == "term":
        return _term_matches(actual, operand)
    if kind == "terms":
        return any(_term_matches(actual, value) for value in operand)
    if kind == "range":
        if actual is None or isinstance(actual, bool):
            return False
        try:
            if "gte" in operand and actual < operand["gte"]:
                return False
            if "lte" in operand and actual > operand["lte"]:
                return False
        except TypeError:
            return False
        return True
    logger.warning(f"Unknown search clause: '{kind}'")
    return False


def _text_score(document: Mapping[str, Any], tokens: list[str]) -> int:
    document_tokens: list[str] = []
    for value in _text_values(document):
        document_tokens.extend(tokenize(value))
    return sum(document_tokens.count(token) for token in tokens)


class MemorySearchIndex(BaseStoreAdapter):
    """Token-scoring search index for development, tests and single-node use."""

    kind = StoreKind.SEARCH

    def __init__(self) -> None:
        super().__init__()
        self._indices: dict[IndexName, dict[EntityId, Document]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self.connected = True
        logger.debug("MemorySearchIndex connected")

    async def close(self) -> None:
        self.connected = False

    async def health_extra(self) -> dict[str, Any]:
        return {
            "cluster_health": "green",
            "indices": len(self._indices),
            "documents": sum(len(docs) for docs in self._indices.values()),
        }

    def translate_query(self, collection: CollectionName, query: StoreQuery) -> dict[str, Any]:
        return to_search_body(query)

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
        name = index_name(document["tenant_id"], collection)
        async with self._lock:
            self._indices.setdefault(name, {})[key] = copy.deepcopy({**document, "id": key})

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None:
        self._require_connected()
        document = self._indices.get(index_name(tenant_id, collection), {}).get(key)
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
            document = self._indices.get(index_name(tenant_id, collection), {}).get(key)
            if document is None or document.get("tenant_id") != tenant_id:
                return None
            document.update(copy.deepcopy(dict(changes)))
            return copy.deepcopy(document)

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool:
        self._require_connected()
        async with self._lock:
            documents = self._indices.get(index_name(tenant_id, collection), {})
            document = documents.get(key)
            if document is None or document.get("tenant_id") != tenant_id:
                return False
            del documents[key]
            return True

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage:
        self._require_connected()
        body = self.translate_query(collection, query)
        bool_query = body["query"]["bool"]
        clauses = [*bool_query["must"], *bool_query["filter"]]
        tokens: list[str] = []
        for clause in bool_query["must"]:
            if "multi_match" in clause:
                tokens = tokenize(clause["multi_match"]["query"])

        scored: list[tuple[int, Document]] = []
        for document in self._indices.get(index_name(query.tenant_id, collection), {}).values():
            if not all(_clause_matches(document, clause) for clause in clauses):
                continue
            score = _text_score(document, tokens) if tokens else 0
            if tokens and score == 0:
                continue
            scored.append((score, document))

        if query.sort:
            ordered = apply_sort([document for _, document in scored], query.sort)
        else:
            ordered = [
                document
                for _, document in sorted(scored, key=lambda pair: pair[0], reverse=True)
            ]
        page = paginate(ordered, body["from"], body.get("size"))
        return QueryPage(items=copy.deepcopy(page), total=len(scored))
