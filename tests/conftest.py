"""Pytest configuration and fixtures for polystore testing.

Fixtures build a fully in-memory deployment (document, SQLite relational,
cache and search stores) and tear every background task down afterwards so
tests never leak delivery or probe tasks.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from polystore.core.config import PolystoreSettings
from polystore.core.federation import FederationEngine
from polystore.core.realtime.publisher import FanoutPublisher
from polystore.core.registry import ConnectionRegistry
from polystore.core.stores.interfaces import StoreKind
from tests.doubles import CountingDocumentStore


@pytest.fixture
def settings() -> PolystoreSettings:
    return PolystoreSettings(
        operation_timeout_seconds=0.5,
        health_check_timeout_seconds=0.2,
        health_check_interval_seconds=0.05,
        default_page_size=10,
        max_page_size=100,
    )


@pytest.fixture
def document_store() -> CountingDocumentStore:
    return CountingDocumentStore()


@pytest_asyncio.fixture
async def registry(
    settings: PolystoreSettings, document_store: CountingDocumentStore
) -> AsyncGenerator[ConnectionRegistry, None]:
    registry = ConnectionRegistry(
        settings, adapters={StoreKind.DOCUMENT: document_store}
    )
    await registry.initialize()
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def publisher(
    registry: ConnectionRegistry, settings: PolystoreSettings
) -> AsyncGenerator[FanoutPublisher, None]:
    publisher = FanoutPublisher(registry, settings)
    await publisher.start()
    yield publisher
    await publisher.stop()


@pytest_asyncio.fixture
async def engine(
    registry: ConnectionRegistry,
    settings: PolystoreSettings,
    publisher: FanoutPublisher,
) -> FederationEngine:
    return FederationEngine(registry, settings, publisher=publisher)
