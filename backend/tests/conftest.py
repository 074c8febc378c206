# tests/conftest.py

import pytest
import pytest_asyncio

from identity_sync.services.tenant_registry import TenantRegistry
from identity_sync.storage.memory import InMemoryRecordStore

from tests.helpers import FakeClock, RecordingSleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store(clock):
    return InMemoryRecordStore(clock=clock)


@pytest.fixture
def tenants(store):
    return TenantRegistry(store)


@pytest_asyncio.fixture
async def seeded_store(store):
    """Store with one active, one suspended and one note-enabled tenant."""
    await store.upsert_tenant("cid-active", account_name="Active Co", account_level="identity_resolution")
    await store.upsert_tenant("cid-suspended", account_name="Paused Co", status="suspended")
    await store.upsert_tenant(
        "cid-notes",
        account_name="Notes Co",
        account_level="handwritten_connect",
        settings={"note": {"sender_name": "Sam at Notes Co"}}
    )
    return store


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "sql: tests that run against an aiosqlite database"
    )
