"""
Connection registry for the backing stores.

The registry owns one adapter per configured store kind and tracks whether
each is currently usable. It is passed explicitly to the federation engine,
the fan-out publisher and the health reporter; there is no module-level state.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .config import PolystoreSettings, StoreConfig, StoreMode
from .errors import ConfigurationError, StoreConnectionError
from .stores.cache import MemoryCacheStore
from .stores.document import MemoryDocumentStore
from .stores.interfaces import StoreAdapter, StoreHealth, StoreKind
from .stores.redis_cache import RedisCacheStore
from .stores.relational import SQLiteRelationalStore
from .stores.search import MemorySearchIndex


@dataclass(slots=True)
class StoreConnection:
    """Connection state for one store kind."""

    kind: StoreKind
    is_connected: bool = False
    last_health_check: float | None = None
    info: dict[str, Any] = field(default_factory=dict)


def create_adapter(kind: StoreKind, config: StoreConfig) -> StoreAdapter:
    """Build the adapter for a store kind from its settings."""
    match (kind, config.mode):
        case (StoreKind.DOCUMENT, StoreMode.MEMORY):
            return MemoryDocumentStore()
        case (StoreKind.RELATIONAL, StoreMode.SQLITE):
            return SQLiteRelationalStore(
                config.path or ":memory:",
                wal_mode=bool(config.options.get("wal_mode", True)),
                synchronous_mode=str(config.options.get("synchronous_mode", "NORMAL")),
            )
        case (StoreKind.CACHE, StoreMode.MEMORY):
            return MemoryCacheStore(key_prefix=config.key_prefix)
        case (StoreKind.CACHE, StoreMode.REDIS):
            if not config.url:
                raise ConfigurationError("redis cache requires a url")
            return RedisCacheStore(
                config.url,
                key_prefix=config.key_prefix,
                pool_size=config.pool_size,
                connect_timeout_seconds=config.connect_timeout_seconds,
            )
        case (StoreKind.SEARCH, StoreMode.MEMORY):
            return MemorySearchIndex()
    raise ConfigurationError(
        f"Unsupported store mode '{config.mode.value}' for {kind.value} store"
    )


class ConnectionRegistry:
    """Owns store adapters and their connection state."""

    def __init__(
        self,
        settings: PolystoreSettings,
        *,
        adapters: Mapping[StoreKind, StoreAdapter] | None = None,
    ) -> None:
        self.settings = settings
        self._configs: dict[StoreKind, StoreConfig] = {}
        self._adapters: dict[StoreKind, StoreAdapter] = {}
        self._connections: dict[StoreKind, StoreConnection] = {}

        injected = dict(adapters or {})
        for kind in StoreKind:
            config = settings.store(kind)
            adapter = injected.get(kind)
            if adapter is None and config is None:
                continue
            config = config or StoreConfig()
            self._configs[kind] = config
            self._adapters[kind] = adapter or create_adapter(kind, config)
            self._connections[kind] = StoreConnection(kind=kind, info=config.describe())

    async def initialize(self) -> list[StoreKind]:
        """Handshake with every configured store in parallel.

        Partial initialization is valid: stores that fail stay disconnected and
        are reported through ``connections()``.
        """
        kinds = list(self._adapters)
        results = await asyncio.gather(
            *(self._handshake(kind) for kind in kinds), return_exceptions=True
        )
        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                self.mark_disconnected(kind, result)
        available = self.available_kinds()
        logger.info(
            "Store registry initialized: {} of {} stores connected ({})",
            len(available),
            len(kinds),
            ", ".join(kind.value for kind in available) or "none",
        )
        return available

    async def _handshake(self, kind: StoreKind) -> None:
        config = self._configs[kind]
        try:
            await asyncio.wait_for(
                self._adapters[kind].connect(), timeout=config.connect_timeout_seconds
            )
        except TimeoutError:
            self.mark_disconnected(
                kind,
                StoreConnectionError(
                    f"handshake timed out after {config.connect_timeout_seconds}s",
                    store=kind.value,
                ),
            )
            return
        connection = self._connections[kind]
        connection.is_connected = True
        connection.info.pop("last_error", None)
        logger.debug("{} store connected", kind.value)

    def is_configured(self, kind: StoreKind) -> bool:
        return kind in self._adapters

    def is_available(self, kind: StoreKind) -> bool:
        connection = self._connections.get(kind)
        return connection is not None and connection.is_connected

    def get(self, kind: StoreKind) -> StoreAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ConfigurationError(f"{kind.value} store is not configured")
        return adapter

    def mark_disconnected(self, kind: StoreKind, error: BaseException | str) -> None:
        connection = self._connections.get(kind)
        if connection is None:
            return
        was_connected = connection.is_connected
        connection.is_connected = False
        connection.info["last_error"] = str(error)
        if was_connected:
            logger.warning(f"{kind.value} store marked disconnected: {error}")
        else:
            logger.warning(f"{kind.value} store unavailable: {error}")

    def record_health(self, kind: StoreKind, health: StoreHealth) -> None:
        connection = self._connections.get(kind)
        if connection is None:
            return
        connection.last_health_check = health.checked_at
        connection.info["last_status"] = health.status.value

    async def reconnect(self, kind: StoreKind) -> bool:
        """Re-run the handshake for one store; returns the new connection state."""
        adapter = self.get(kind)
        try:
            await adapter.close()
        except Exception as e:
            logger.debug(f"Ignoring close failure before reconnect of {kind.value}: {e}")
        try:
            await self._handshake(kind)
        except Exception as e:
            self.mark_disconnected(kind, e)
        self._connections[kind].last_health_check = time.time()
        return self.is_available(kind)

    def connections(self) -> dict[StoreKind, StoreConnection]:
        return {
            kind: StoreConnection(
                kind=connection.kind,
                is_connected=connection.is_connected,
                last_health_check=connection.last_health_check,
                info=dict(connection.info),
            )
            for kind, connection in self._connections.items()
        }

    def available_kinds(self) -> list[StoreKind]:
        return [kind for kind in StoreKind if self.is_available(kind)]

    async def close(self) -> None:
        results = await asyncio.gather(
            *(adapter.close() for adapter in self._adapters.values()),
            return_exceptions=True,
        )
        for kind, result in zip(list(self._adapters), results):
            if isinstance(result, BaseException):
                logger.warning(f"Closing {kind.value} store failed: {result}")
            self._connections[kind].is_connected = False
        logger.info("Store registry closed")
