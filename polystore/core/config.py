"""
Settings for the polystore federation and fan-out layer.

Settings load from plain mappings, TOML or JSON files; file loaders read the
``[polystore]`` section. Collection-typed fields accept scalar values for
convenience (``log_debug_scopes = "core.federation"``).
"""

from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from polystore.datastructures.type_aliases import (
    ChannelPrefix,
    DurationSeconds,
    EntityType,
    QuotaLimit,
    TenantId,
)

from .stores.interfaces import StoreKind

SETTINGS_SECTION = "polystore"


class StoreMode(StrEnum):
    """Supported backing implementations."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    REDIS = "redis"


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Connection settings for one backing store."""

    mode: StoreMode = StoreMode.MEMORY
    url: str | None = None
    path: str | None = None
    pool_size: int = 10
    connect_timeout_seconds: DurationSeconds = 5.0
    key_prefix: str = ""
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StoreConfig:
        unknown = set(payload) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown store settings: {sorted(unknown)}")
        values = dict(payload)
        if "mode" in values:
            values["mode"] = StoreMode(str(values["mode"]).lower())
        if "options" in values:
            values["options"] = dict(values["options"] or {})
        return cls(**values)

    def redacted_url(self) -> str | None:
        """Connection URL with any credentials masked."""
        if not self.url:
            return None
        parts = urlsplit(self.url)
        if parts.username is None and parts.password is None:
            return self.url
        host = parts.hostname or ""
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        return urlunsplit(parts._replace(netloc=f"***@{host}"))

    def describe(self) -> dict[str, Any]:
        info: dict[str, Any] = {"mode": self.mode.value}
        if self.url:
            info["url"] = self.redacted_url()
        if self.path:
            info["path"] = self.path
        if self.key_prefix:
            info["key_prefix"] = self.key_prefix
        return info


def _default_stores() -> dict[StoreKind, StoreConfig | None]:
    return {
        StoreKind.DOCUMENT: StoreConfig(mode=StoreMode.MEMORY),
        StoreKind.RELATIONAL: StoreConfig(mode=StoreMode.SQLITE, path=":memory:"),
        StoreKind.CACHE: StoreConfig(mode=StoreMode.MEMORY),
        StoreKind.SEARCH: StoreConfig(mode=StoreMode.MEMORY),
    }


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _parse_stores(payload: Mapping[str, Any]) -> dict[StoreKind, StoreConfig | None]:
    stores = _default_stores()
    for name, store_payload in payload.items():
        kind = StoreKind(str(name).lower())
        if store_payload in (None, False, "disabled"):
            stores[kind] = None
        elif isinstance(store_payload, StoreConfig):
            stores[kind] = store_payload
        else:
            stores[kind] = StoreConfig.from_dict(store_payload)
    return stores


@dataclass(slots=True)
class PolystoreSettings:
    """Configuration surface consumed by the federation and fan-out layer."""

    multi_tenant: bool = True
    default_tenant_id: TenantId = "default"
    cache_ttl_seconds: DurationSeconds = 3600.0
    channel_prefix: ChannelPrefix = "polystore"
    event_source: str = "polystore"
    realtime_enabled: bool = True
    disabled_realtime_tenants: frozenset[TenantId] = frozenset()
    operation_timeout_seconds: DurationSeconds = 5.0
    health_check_timeout_seconds: DurationSeconds = 2.0
    health_check_interval_seconds: DurationSeconds = 30.0
    subscriber_queue_size: int = 1000
    default_page_size: int = 50
    max_page_size: int = 1000
    entity_quotas: dict[EntityType, QuotaLimit] = field(default_factory=dict)
    tenant_quota_overrides: dict[TenantId, dict[EntityType, QuotaLimit]] = field(
        default_factory=dict
    )
    log_level: str = "INFO"
    log_debug_scopes: tuple[str, ...] = ()
    stores: dict[StoreKind, StoreConfig | None] = field(default_factory=_default_stores)

    def __post_init__(self) -> None:
        if ":" in self.channel_prefix:
            raise ValueError("channel_prefix must not contain ':'")
        if self.default_page_size < 1 or self.max_page_size < self.default_page_size:
            raise ValueError("page sizes must satisfy 1 <= default <= max")
        if self.subscriber_queue_size < 1:
            raise ValueError("subscriber_queue_size must be positive")

    def store(self, kind: StoreKind) -> StoreConfig | None:
        return self.stores.get(kind)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PolystoreSettings:
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            raise ValueError(f"Unknown polystore settings: {sorted(unknown)}")

        values = dict(payload)
        if "log_debug_scopes" in values:
            values["log_debug_scopes"] = _as_tuple(values["log_debug_scopes"])
        if "disabled_realtime_tenants" in values:
            values["disabled_realtime_tenants"] = frozenset(
                _as_tuple(values["disabled_realtime_tenants"])
            )
        if "entity_quotas" in values:
            values["entity_quotas"] = {
                str(key): int(limit)
                for key, limit in dict(values["entity_quotas"]).items()
            }
        if "tenant_quota_overrides" in values:
            values["tenant_quota_overrides"] = {
                str(tenant): {str(key): int(limit) for key, limit in limits.items()}
                for tenant, limits in dict(values["tenant_quota_overrides"]).items()
            }
        if "stores" in values:
            values["stores"] = _parse_stores(values["stores"] or {})
        return cls(**values)

    @classmethod
    def from_toml(cls, path: Path) -> PolystoreSettings:
        with Path(path).open("rb") as handle:
            document = tomllib.load(handle)
        return cls.from_dict(document.get(SETTINGS_SECTION, {}))

    @classmethod
    def from_json(cls, path: Path) -> PolystoreSettings:
        document = json.loads(Path(path).read_text())
        return cls.from_dict(document.get(SETTINGS_SECTION, {}))

    @classmethod
    def from_path(cls, path: Path) -> PolystoreSettings:
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix == ".toml":
            return cls.from_toml(path)
        if suffix == ".json":
            return cls.from_json(path)
        raise ValueError(f"Unsupported settings file type: {path.suffix or path.name}")
