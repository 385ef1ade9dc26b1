"""
Composition root wiring settings, stores, fan-out, federation and health.

Typical use::

    async with Polystore(PolystoreSettings.from_path("polystore.toml")) as store:
        result = await store.execute(PersistentOperation.read("t1", "alert", "01H..."))
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from loguru import logger

from polystore.datastructures.type_aliases import ChannelName, SubscriptionId, TenantId

from .config import PolystoreSettings
from .errors import StoreConnectionError
from .federation import FederationEngine
from .logging import configure_logging
from .model import OperationResult, PersistentOperation
from .monitoring.health import HealthReport, HealthReporter
from .realtime.events import SubscriptionFilter
from .realtime.publisher import FanoutPublisher
from .realtime.subscriptions import EventPredicate, UpdateCallback
from .registry import ConnectionRegistry
from .stores.interfaces import StoreAdapter, StoreKind


class Polystore:
    """Owns one registry, publisher, engine and health reporter."""

    def __init__(
        self,
        settings: PolystoreSettings | None = None,
        *,
        adapters: Mapping[StoreKind, StoreAdapter] | None = None,
        configure_logs: bool = False,
        monitor: bool = False,
    ) -> None:
        self.settings = settings or PolystoreSettings()
        self.registry = ConnectionRegistry(self.settings, adapters=adapters)
        self.publisher = FanoutPublisher(self.registry, self.settings)
        self.engine = FederationEngine(self.registry, self.settings)
        self.health = HealthReporter(self.registry, self.settings, publisher=self.publisher)
        self._configure_logs = configure_logs
        self._monitor = monitor
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> list[StoreKind]:
        """Connect stores, then start fan-out if the cache came up."""
        if self._configure_logs:
            configure_logging(
                self.settings.log_level, debug_scopes=self.settings.log_debug_scopes
            )
        available = await self.registry.initialize()

        if self.settings.realtime_enabled and StoreKind.CACHE in available:
            await self.publisher.start()
            self.engine.attach_publisher(self.publisher)
        elif self.settings.realtime_enabled:
            logger.warning("Cache store unavailable; real-time fan-out not started")

        if self._monitor:
            await self.health.start()
        self._started = True
        return available

    async def stop(self) -> None:
        if not self._started:
            return
        await self.health.stop()
        await self.publisher.stop()
        self.engine.attach_publisher(None)
        await self.registry.close()
        self._started = False

    async def __aenter__(self) -> Polystore:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def execute(self, op: PersistentOperation) -> OperationResult:
        return await self.engine.execute(op)

    async def subscribe(
        self,
        tenant_id: TenantId,
        channels: Iterable[ChannelName],
        callback: UpdateCallback,
        filter: SubscriptionFilter | Mapping[str, Any] | EventPredicate | None = None,
    ) -> SubscriptionId:
        return await self.publisher.subscribe(tenant_id, channels, callback, filter)

    async def unsubscribe(self, subscription_id: SubscriptionId) -> bool:
        return await self.publisher.unsubscribe(subscription_id)

    async def get_health(self) -> HealthReport:
        return await self.health.get_health()

    async def reconnect(self, kind: StoreKind) -> bool:
        """Reconnect one store; restarts fan-out when the cache returns."""
        connected = await self.registry.reconnect(kind)
        if not connected or kind is not StoreKind.CACHE or not self.settings.realtime_enabled:
            return connected
        try:
            if self.publisher.started:
                await self.publisher.resubscribe()
            else:
                await self.publisher.start()
                self.engine.attach_publisher(self.publisher)
        except StoreConnectionError as e:
            logger.warning(f"Real-time fan-out not restored after reconnect: {e}")
        return connected

    def stats(self) -> dict[str, Any]:
        return {
            "engine": self.engine.stats(),
            "realtime": self.publisher.stats(),
            "connections": {
                kind.value: {
                    "connected": connection.is_connected,
                    "last_health_check": connection.last_health_check,
                    **connection.info,
                }
                for kind, connection in self.registry.connections().items()
            },
        }
