"""
Semantic type aliases for polystore.

This module provides meaningful type aliases that make the codebase more
self-documenting by replacing raw types like str, int, float with semantic
aliases.
"""

from collections.abc import Mapping
from typing import Any

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float
type DurationMilliseconds = float

# Tenancy and entity identifiers
type TenantId = str
type EntityType = str
type EntityId = str
type CollectionName = str
type IndexName = str

# Cache-related types
type CacheKeyString = str
type CacheTtlSeconds = float

# Real-time channel types
type ChannelName = str
type QualifiedChannelName = str  # prefix:tenant:channel
type ChannelPrefix = str
type SubscriptionId = str
type EventId = str
type ReceiverCount = int

# Documents and payloads
type JsonDict = dict[str, Any]
type Document = dict[str, Any]
type FieldName = str
type FieldValue = Any
type MetadataKey = str
type MetadataValue = Any
type Headers = Mapping[str, str]

# Statistics and metrics types
type HitCount = int
type MissCount = int
type EntryCount = int
type LatencyMs = float
type SuccessRate = float

# Pagination
type PageNumber = int
type PageSize = int
type RecordOffset = int
type TotalCount = int

# Quota types
type QuotaLimit = int
type UsageCount = int
