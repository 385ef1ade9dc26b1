"""
polystore core

Federation engine, connection registry, store adapters, real-time fan-out
and health reporting.
"""

from .config import PolystoreSettings, StoreConfig, StoreMode
from .errors import (
    ConfigurationError,
    DeliveryError,
    NotInitializedError,
    PolystoreError,
    QuotaExceededError,
    RealtimeDisabledError,
    StoreConnectionError,
    StoreTimeoutError,
    ValidationError,
)
from .federation import FederationEngine
from .filters import Eq, FilterExpr, In, Range
from .model import (
    EntityRecord,
    OperationResult,
    OperationType,
    Pagination,
    PersistentOperation,
    QuerySpec,
    ResultMetadata,
    SortDirection,
    SortSpec,
)
from .registry import ConnectionRegistry, StoreConnection, create_adapter
from .tenancy import TenantQuotas

__all__ = [
    "ConfigurationError",
    "ConnectionRegistry",
    "DeliveryError",
    "EntityRecord",
    "Eq",
    "FederationEngine",
    "FilterExpr",
    "In",
    "NotInitializedError",
    "OperationResult",
    "OperationType",
    "Pagination",
    "PersistentOperation",
    "PolystoreError",
    "PolystoreSettings",
    "QuerySpec",
    "QuotaExceededError",
    "Range",
    "RealtimeDisabledError",
    "ResultMetadata",
    "SortDirection",
    "SortSpec",
    "StoreConfig",
    "StoreConnection",
    "StoreConnectionError",
    "StoreMode",
    "StoreTimeoutError",
    "TenantQuotas",
    "ValidationError",
    "create_adapter",
]
