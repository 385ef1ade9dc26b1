"""
Change events carried over the cache's pub/sub channels.

``RealTimeUpdate`` is the wire payload: a frozen pydantic model serialized as
JSON. ``SubscriptionFilter`` narrows which events a subscriber receives.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import ulid
from pydantic import BaseModel, ConfigDict, Field, field_validator

from polystore.core.serialization import JsonSerializer
from polystore.datastructures.type_aliases import (
    ChannelName,
    EntityId,
    EntityType,
    EventId,
    TenantId,
    Timestamp,
)

_serializer = JsonSerializer()


class UpdateAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"


class RealTimeUpdate(BaseModel):
    """
    A single entity change event.

    Published once per channel in ``channels`` plus the tenant-wide
    ``all-updates`` channel; ``event_id`` lets a subscriber listening on
    several of those channels see the event only once.
    """

    model_config = ConfigDict(frozen=True)

    event_id: EventId = Field(
        default_factory=lambda: str(ulid.new()),
        description="Unique identifier (ULID) used for de-duplication.",
    )
    type: str = Field(
        default="entity_change", description="Event category for consumers."
    )
    action: UpdateAction = Field(description="What happened to the entity.")
    tenant_id: TenantId = Field(description="Tenant that owns the entity.")
    entity_id: EntityId = Field(description="Identifier of the changed entity.")
    entity_type: EntityType = Field(description="Type of the changed entity.")
    timestamp: Timestamp = Field(
        default_factory=time.time, description="When the change happened."
    )
    data: dict[str, Any] = Field(
        default_factory=dict, description="Entity document after the change."
    )
    source: str = Field(default="polystore", description="Producer of the event.")
    channels: tuple[ChannelName, ...] = Field(
        default_factory=tuple, description="Unqualified channel names to publish on."
    )
    metadata: dict[str, Any] | None = Field(
        default=None, description="Optional producer-defined attributes."
    )

    @field_validator("tenant_id")
    @classmethod
    def _tenant_is_channel_safe(cls, value: str) -> str:
        if not value or ":" in value:
            raise ValueError("tenant_id must be non-empty and must not contain ':'")
        return value

    def to_bytes(self) -> bytes:
        return _serializer.serialize(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, raw: bytes | str) -> RealTimeUpdate:
        return cls.model_validate(_serializer.deserialize(raw))


def _allow_list(value: Any) -> frozenset[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return frozenset({value})
    items = frozenset(str(item) for item in value)
    return items or None


@dataclass(frozen=True, slots=True)
class SubscriptionFilter:
    """Conjunction of allow-lists over an event's fields and metadata.

    ``None`` means "no constraint". Metadata values may be a scalar (equality)
    or a collection (allow-list); an event without the key never matches.
    """

    entity_types: frozenset[EntityType] | None = None
    actions: frozenset[str] | None = None
    sources: frozenset[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SubscriptionFilter:
        values = dict(payload)
        entity_types = values.pop("entity_types", values.pop("entity_type", None))
        actions = values.pop("actions", values.pop("action", None))
        sources = values.pop("sources", values.pop("source", None))
        metadata = dict(values.pop("metadata", None) or {})
        # Remaining keys are metadata checks.
        metadata.update(values)
        return cls(
            entity_types=_allow_list(entity_types),
            actions=_allow_list(actions),
            sources=_allow_list(sources),
            metadata=metadata,
        )

    def matches(self, event: RealTimeUpdate) -> bool:
        if self.entity_types is not None and event.entity_type not in self.entity_types:
            return False
        if self.actions is not None and event.action.value not in self.actions:
            return False
        if self.sources is not None and event.source not in self.sources:
            return False
        if self.metadata:
            event_metadata = event.metadata or {}
            for key, expected in self.metadata.items():
                if key not in event_metadata:
                    return False
                actual = event_metadata[key]
                if isinstance(expected, Iterable) and not isinstance(expected, str | bytes | Mapping):
                    if actual not in expected:
                        return False
                elif actual != expected:
                    return False
        return True
