"""
Health reporting for the backing stores and real-time fan-out.

Aggregate status is driven by the cache, because real-time delivery depends on
its pub/sub channels:

- ``unhealthy`` when the cache is not configured or unreachable
- ``degraded`` when it is reachable but nobody is subscribed
- ``healthy`` otherwise
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from polystore.core.config import PolystoreSettings
from polystore.core.realtime.publisher import FanoutPublisher
from polystore.core.registry import ConnectionRegistry
from polystore.core.stores.interfaces import HealthStatus, StoreHealth, StoreKind
from polystore.core.task_manager import ManagedObject
from polystore.datastructures.type_aliases import LatencyMs, SuccessRate, Timestamp

_SAMPLE_WINDOW = 100


def _calculate_percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    index = int(round((percentile / 100.0) * (len(sorted_values) - 1)))
    index = max(0, min(index, len(sorted_values) - 1))
    return float(sorted_values[index])


@dataclass(slots=True)
class AdapterHealthStats:
    """Rolling latency and availability samples for one store."""

    kind: StoreKind
    samples: deque[tuple[Timestamp, LatencyMs, bool]] = field(
        default_factory=lambda: deque(maxlen=_SAMPLE_WINDOW)
    )
    last: StoreHealth | None = None

    def record(self, health: StoreHealth) -> None:
        self.samples.append((health.checked_at, health.response_time_ms, health.healthy))
        self.last = health

    @property
    def availability(self) -> SuccessRate:
        if not self.samples:
            return 0.0
        return sum(1 for _, _, ok in self.samples if ok) / len(self.samples)

    @property
    def average_latency_ms(self) -> LatencyMs:
        if not self.samples:
            return 0.0
        return sum(latency for _, latency, _ in self.samples) / len(self.samples)

    @property
    def p95_latency_ms(self) -> LatencyMs:
        return _calculate_percentile([latency for _, latency, _ in self.samples], 95.0)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "samples": len(self.samples),
            "availability": self.availability,
            "average_latency_ms": self.average_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
        }
        if self.last is not None:
            payload.update(
                status=self.last.status.value,
                response_time_ms=self.last.response_time_ms,
                extra=dict(self.last.extra),
                checked_at=self.last.checked_at,
            )
        return payload


@dataclass(frozen=True, slots=True)
class HealthReport:
    status: HealthStatus
    per_adapter: dict[str, dict[str, Any]]
    realtime: dict[str, Any]
    checked_at: Timestamp = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "per_adapter": self.per_adapter,
            "realtime": self.realtime,
            "checked_at": self.checked_at,
        }


class HealthReporter(ManagedObject):
    """Probes every configured store and aggregates an overall status."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: PolystoreSettings,
        *,
        publisher: FanoutPublisher | None = None,
    ) -> None:
        super().__init__(name="HealthReporter")
        self.registry = registry
        self.settings = settings
        self.publisher = publisher
        self.stats: dict[StoreKind, AdapterHealthStats] = {}
        self._probe_task: asyncio.Task[None] | None = None

    async def _probe(self, kind: StoreKind) -> StoreHealth:
        timeout = self.settings.health_check_timeout_seconds
        adapter = self.registry.get(kind)
        start = time.perf_counter()
        try:
            # Adapters bound their own probe; the outer bound covers misbehaving ones.
            return await asyncio.wait_for(adapter.health_check(timeout), timeout=timeout * 2)
        except TimeoutError:
            return StoreHealth(
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - start) * 1000.0,
                extra={"error": "timeout"},
            )
        except Exception as e:
            return StoreHealth(
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - start) * 1000.0,
                extra={"error": str(e)},
            )

    async def probe_all(self) -> dict[StoreKind, StoreHealth]:
        kinds = [kind for kind in StoreKind if self.registry.is_configured(kind)]
        results = await asyncio.gather(*(self._probe(kind) for kind in kinds))
        probes: dict[StoreKind, StoreHealth] = {}
        for kind, health in zip(kinds, results):
            if not self.registry.is_available(kind) and health.healthy:
                health = StoreHealth(
                    status=HealthStatus.UNHEALTHY,
                    response_time_ms=health.response_time_ms,
                    extra={**health.extra, "error": "disconnected"},
                )
            probes[kind] = health
            self.stats.setdefault(kind, AdapterHealthStats(kind=kind)).record(health)
            self.registry.record_health(kind, health)
        return probes

    def _realtime_info(self) -> dict[str, Any]:
        if self.publisher is None:
            return {"started": False, "active_subscriptions": 0, "channels": 0}
        return {
            "started": self.publisher.started,
            "active_subscriptions": self.publisher.subscriptions.active_count(),
            "channels": len(self.publisher.subscriptions.channels()),
            "events_published": self.publisher.events_published,
        }

    async def get_health(self) -> HealthReport:
        probes = await self.probe_all()
        realtime = self._realtime_info()

        cache_health = probes.get(StoreKind.CACHE)
        if cache_health is None or not cache_health.healthy:
            status = HealthStatus.UNHEALTHY
        elif realtime["active_subscriptions"] == 0:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        per_adapter = {kind.value: self.stats[kind].to_dict() for kind in probes}
        for kind, connection in self.registry.connections().items():
            per_adapter[kind.value]["connected"] = connection.is_connected
        return HealthReport(status=status, per_adapter=per_adapter, realtime=realtime)

    async def start(self) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_task = self.create_task(self._run_periodic(), name="health-probe")
        logger.info(
            "Health reporter started (interval={}s)", self.settings.health_check_interval_seconds
        )

    async def stop(self) -> None:
        await self.shutdown()
        self._probe_task = None

    async def _run_periodic(self) -> None:
        while True:
            try:
                probes = await self.probe_all()
                unhealthy = [kind.value for kind, health in probes.items() if not health.healthy]
                if unhealthy:
                    logger.warning(f"Unhealthy stores: {', '.join(unhealthy)}")
            except Exception as e:
                logger.error(f"Health probe cycle failed: {e}")
            await asyncio.sleep(self.settings.health_check_interval_seconds)
