"""Shared test fixtures for all test modules."""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest

from loglens.adapters.storage.in_memory import InMemoryEventStore
from loglens.adapters.storage.sqlite_events import SQLiteEventStore
from loglens.core.models import Event, Level

# Aligned to 300s and 3600s boundaries
T0 = 1_699_999_200.0


@pytest.fixture
def t0() -> float:
    """Base timestamp aligned to hour and five-minute boundaries."""
    return T0


@pytest.fixture
def make_event() -> Callable[..., Event]:
    """Factory for events with sensible defaults."""

    def _make(
        timestamp: float = T0,
        entity: str = "F1",
        level: Level | str = Level.INFO,
        message: str = "ok",
        category: str = "app",
        **properties: object,
    ) -> Event:
        return Event(
            timestamp=timestamp,
            entity=entity,
            category=category,
            level=level,
            message=message,
            resource_id=f"res-{entity}",
            properties=properties,
        )

    return _make


@pytest.fixture
def event_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for event storage tests."""
    return str(tmp_path / "events.db")


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    """Empty in-memory event store."""
    return InMemoryEventStore()


@pytest.fixture
async def sqlite_store(event_db_path: str) -> AsyncGenerator[SQLiteEventStore]:
    """File-backed SQLite event store with cleanup."""
    store = SQLiteEventStore(event_db_path)
    yield store
    await store.close()


# === ASGI Test Fixtures ===


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            app = create_asgi_app(store)
            async with asgi_test_client(app) as client:
                response = await client.get("/events")
    """

    def _get_client(app):
        """Return an AsyncClient context manager for the given app."""
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    return _get_client
