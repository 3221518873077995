"""Storage adapters implementing EventStoragePort."""

from loglens.adapters.storage.in_memory import InMemoryEventStore
from loglens.adapters.storage.sqlite_events import SQLiteEventStore

__all__ = [
    "InMemoryEventStore",
    "SQLiteEventStore",
]
