"""Backing store adapters and the interfaces they share."""

from .cache import MemoryCacheStore
from .document import MemoryDocumentStore, to_mongo_filter
from .interfaces import (
    BaseStoreAdapter,
    CacheAdapter,
    DocumentStoreAdapter,
    HealthStatus,
    QueryPage,
    RelationalStoreAdapter,
    SearchAdapter,
    StoreAdapter,
    StoreHealth,
    StoreKind,
    StoreQuery,
    cache_key,
)
from .redis_cache import RedisCacheStore
from .relational import SQLiteRelationalStore, to_sql_where
from .search import MemorySearchIndex, index_name, to_search_body

__all__ = [
    "BaseStoreAdapter",
    "CacheAdapter",
    "DocumentStoreAdapter",
    "HealthStatus",
    "MemoryCacheStore",
    "MemoryDocumentStore",
    "MemorySearchIndex",
    "QueryPage",
    "RedisCacheStore",
    "RelationalStoreAdapter",
    "SQLiteRelationalStore",
    "SearchAdapter",
    "StoreAdapter",
    "StoreHealth",
    "StoreKind",
    "StoreQuery",
    "cache_key",
    "index_name",
    "to_mongo_filter",
    "to_search_body",
    "to_sql_where",
]
