"""Per-tenant entity quota counters checked on create."""

from __future__ import annotations

import threading
from collections import defaultdict

from loguru import logger

from polystore.datastructures.type_aliases import (
    EntityType,
    QuotaLimit,
    TenantId,
    UsageCount,
)

from .config import PolystoreSettings
from .errors import QuotaExceededError


class TenantQuotas:
    """Counts live entities per tenant and entity type against configured limits.

    Limits come from ``entity_quotas`` with per-tenant overrides from
    ``tenant_quota_overrides``. Entity types without a limit are unbounded.
    Counters are process-local; they track writes made through this engine.
    """

    def __init__(self, settings: PolystoreSettings) -> None:
        self.settings = settings
        self._usage: dict[tuple[TenantId, EntityType], UsageCount] = defaultdict(int)
        self._lock = threading.Lock()

    def limit(self, tenant_id: TenantId, entity_type: EntityType) -> QuotaLimit | None:
        overrides = self.settings.tenant_quota_overrides.get(tenant_id, {})
        if entity_type in overrides:
            return overrides[entity_type]
        return self.settings.entity_quotas.get(entity_type)

    def usage(self, tenant_id: TenantId, entity_type: EntityType) -> UsageCount:
        with self._lock:
            return self._usage.get((tenant_id, entity_type), 0)

    def check(self, tenant_id: TenantId, entity_type: EntityType) -> None:
        """Raise ``QuotaExceededError`` if one more entity would exceed the limit."""
        limit = self.limit(tenant_id, entity_type)
        if limit is None:
            return
        used = self.usage(tenant_id, entity_type)
        if used >= limit:
            logger.info(
                "Quota reached for tenant {} on {}: {}/{}", tenant_id, entity_type, used, limit
            )
            raise QuotaExceededError(
                f"Quota exceeded for {entity_type}: {used}/{limit} used by tenant {tenant_id}"
            )

    def increment(self, tenant_id: TenantId, entity_type: EntityType) -> UsageCount:
        with self._lock:
            self._usage[(tenant_id, entity_type)] += 1
            return self._usage[(tenant_id, entity_type)]

    def decrement(self, tenant_id: TenantId, entity_type: EntityType) -> UsageCount:
        with self._lock:
            current = max(0, self._usage.get((tenant_id, entity_type), 0) - 1)
            self._usage[(tenant_id, entity_type)] = current
            return current

    def reset(self, tenant_id: TenantId | None = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._usage.clear()
                return
            for key in [key for key in self._usage if key[0] == tenant_id]:
                del self._usage[key]
