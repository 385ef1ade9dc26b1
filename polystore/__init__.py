"""
polystore - federated multi-store persistence with real-time fan-out

One ``execute(PersistentOperation)`` entry point persists and queries
tenant-scoped entity records across a canonical document store and its
mirrors (cache, search index), and publishes change events to per-tenant
pub/sub channels.

## Quick Start

```python
from polystore import PersistentOperation, Polystore, PolystoreSettings

async with Polystore(PolystoreSettings()) as store:
    await store.subscribe("t1", ["widget"], print)
    created = await store.execute(
        PersistentOperation.create("t1", "widget", {"name": "a"})
    )
    entity_id = created.first["id"]
```

The pieces can also be wired by hand: ``ConnectionRegistry`` owns the store
adapters, ``FanoutPublisher`` the subscriptions and ``FederationEngine`` the
routing. ``Polystore`` only composes them.
"""

from .core import (
    ConfigurationError,
    ConnectionRegistry,
    EntityRecord,
    Eq,
    FederationEngine,
    In,
    NotInitializedError,
    OperationResult,
    OperationType,
    PersistentOperation,
    PolystoreError,
    PolystoreSettings,
    QuerySpec,
    Range,
    StoreConfig,
    StoreConnectionError,
    ValidationError,
)
from .core.logging import configure_logging
from .core.monitoring import HealthReport, HealthReporter
from .core.realtime import (
    FanoutPublisher,
    RealTimeUpdate,
    SubscriptionFilter,
    UpdateAction,
)
from .core.runtime import Polystore
from .core.stores import StoreKind

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ConnectionRegistry",
    "EntityRecord",
    "Eq",
    "FanoutPublisher",
    "FederationEngine",
    "HealthReport",
    "HealthReporter",
    "In",
    "NotInitializedError",
    "OperationResult",
    "OperationType",
    "PersistentOperation",
    "Polystore",
    "PolystoreError",
    "PolystoreSettings",
    "QuerySpec",
    "Range",
    "RealTimeUpdate",
    "StoreConfig",
    "StoreConnectionError",
    "StoreKind",
    "SubscriptionFilter",
    "UpdateAction",
    "ValidationError",
    "configure_logging",
]
