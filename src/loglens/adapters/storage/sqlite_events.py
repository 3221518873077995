"""SQLite storage adapter for events."""

import json
import logging
import math
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

import aiosqlite

from loglens.adapters.storage.sqlite_base import (
    AsyncConnectionManager,
    SyncConnectionManager,
    translate_errors,
)
from loglens.core.cancellation import CancellationToken, deadline, with_timeout
from loglens.core.events import DEFAULT_MAX_EVENT_BYTES, validate_event
from loglens.core.exceptions import OperationTimeoutError
from loglens.core.models import Event, TimeRange

logger = logging.getLogger(__name__)

_EVENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    entity TEXT NOT NULL,
    category TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    properties TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp, id);
CREATE INDEX IF NOT EXISTS idx_events_entity_timestamp ON events(entity, timestamp, id);
"""

_INSERT_EVENT = """
INSERT INTO events (timestamp, entity, category, level, message, resource_id, properties)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_COLUMNS = "id, timestamp, entity, category, level, message, resource_id, properties"

_SELECT_RANGE = f"""
SELECT {_COLUMNS}
FROM events
WHERE timestamp >= ? AND timestamp < ? AND id <= ?
ORDER BY timestamp ASC, id ASC
"""

_SELECT_RANGE_BY_ENTITY = f"""
SELECT {_COLUMNS}
FROM events
WHERE entity = ? AND timestamp >= ? AND timestamp < ? AND id <= ?
ORDER BY timestamp ASC, id ASC
"""

_MAX_ID = "SELECT COALESCE(MAX(id), 0) FROM events"

_COUNT_EVENTS = "SELECT COUNT(*) FROM events"

_DELETE_EVENTS_BEFORE = "DELETE FROM events WHERE timestamp < ?"

_CLEAR_EVENTS = "DELETE FROM events"

_FETCH_SIZE = 256


def _to_row(event: Event) -> tuple[Any, ...]:
    return (
        event.timestamp,
        event.entity,
        event.category,
        event.level.value,
        event.message,
        event.resource_id,
        json.dumps(dict(event.properties), default=str),
    )


def _from_row(row: Any) -> Event:
    return Event(
        timestamp=row[1],
        entity=row[2],
        category=row[3],
        level=row[4],
        message=row[5],
        resource_id=row[6],
        properties=json.loads(row[7]),
    )


class SQLiteEventStore:
    """SQLite implementation of EventStoragePort.

    Stores events using aiosqlite for non-blocking async operations, in WAL
    mode so one writer and many readers can work concurrently. An append is
    committed before it returns. Queries are bounded by the highest row id
    acknowledged when the query was issued, so later appends stay invisible.

    Sync methods (append_sync, query_sync, clear_sync) use the standard
    sqlite3 module for non-async contexts like logging handlers or testing.
    For :memory: databases, sync and async have separate in-memory DBs.
    """

    def __init__(
        self,
        db_path: str,
        max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES,
    ) -> None:
        self._db_path = db_path
        self._max_event_bytes = max_event_bytes
        self._async = AsyncConnectionManager(db_path, _EVENTS_SCHEMA)
        self._sync = SyncConnectionManager(db_path, _EVENTS_SCHEMA)
        self._listeners: list[Callable[[Event], None]] = []
        self._purge_listeners: list[Callable[[float], None]] = []

    def add_listener(self, callback: Callable[[Event], None]) -> None:
        """Register a callback invoked after every acknowledged append."""
        self._listeners.append(callback)

    def add_purge_listener(self, callback: Callable[[float], None]) -> None:
        """Register a callback invoked with the cutoff after events are purged."""
        self._purge_listeners.append(callback)

    def _acknowledge(self, event: Event) -> None:
        for callback in self._listeners:
            callback(event)

    def _purged(self, cutoff: float) -> None:
        for callback in self._purge_listeners:
            callback(cutoff)

    async def append(self, event: Event, *, timeout: float | None = None) -> None:
        """Validate, insert and commit an event.

        Raises:
            ValidationError: If the event is invalid.
            TransientStorageError: If the database is locked or busy.
            OperationTimeoutError: If the write exceeds timeout.
        """
        validate_event(event, self._max_event_bytes)
        async with deadline(timeout, "event store append"):
            with translate_errors():
                async with self._async.connection() as db:
                    await db.execute(_INSERT_EVENT, _to_row(event))
                    await db.commit()
        self._acknowledge(event)

    def query(
        self,
        time_range: TimeRange,
        predicate: Callable[[Any], bool] | None = None,
        *,
        entity: str | None = None,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[Event]:
        """Read events in time_range, ordered by timestamp ascending.

        The snapshot is fixed when iteration starts: rows appended after the
        first fetch are excluded by the row-id bound.
        """
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        expires = None if timeout is None else time.monotonic() + timeout
        return self._scan(time_range, predicate, entity, expires, token)

    async def _scan(
        self,
        time_range: TimeRange,
        predicate: Callable[[Any], bool] | None,
        entity: str | None,
        expires: float | None,
        token: CancellationToken | None,
    ) -> AsyncIterator[Event]:
        def remaining() -> float | None:
            if expires is None:
                return None
            left = expires - time.monotonic()
            if left <= 0:
                raise OperationTimeoutError("event store query exceeded its timeout")
            return left

        async with self._async.connection() as db:
            high_water = await with_timeout(
                self._max_id(db), remaining(), "event store query"
            )
            if entity is None:
                sql = _SELECT_RANGE
                params: tuple[Any, ...] = (time_range.start, time_range.end, high_water)
            else:
                sql = _SELECT_RANGE_BY_ENTITY
                params = (entity, time_range.start, time_range.end, high_water)
            cursor = await with_timeout(db.execute(sql, params), remaining(), "event store query")
            try:
                while True:
                    rows = await with_timeout(
                        cursor.fetchmany(_FETCH_SIZE), remaining(), "event store query"
                    )
                    if not rows:
                        break
                    for row in rows:
                        if token is not None:
                            token.raise_if_cancelled()
                        event = _from_row(row)
                        if predicate is not None and not predicate(event.to_row()):
                            continue
                        yield event
            finally:
                await cursor.close()

    @staticmethod
    async def _max_id(db: aiosqlite.Connection) -> int:
        async with db.execute(_MAX_ID) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def count(self) -> int:
        """Return total number of events in storage."""
        async with self._async.connection() as db:
            async with db.execute(_COUNT_EVENTS) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    async def purge_before(self, cutoff: float) -> int:
        """Delete events with timestamp < cutoff and return how many."""
        with translate_errors():
            async with self._async.connection() as db:
                cursor = await db.execute(_DELETE_EVENTS_BEFORE, (cutoff,))
                deleted = cursor.rowcount
                await db.commit()
        if deleted:
            logger.info("Purged %d events older than %s", deleted, cutoff)
            self._purged(cutoff)
        return deleted

    async def clear(self) -> None:
        """Clear all events from storage."""
        async with self._async.connection() as db:
            await db.execute(_CLEAR_EVENTS)
            await db.commit()
        self._purged(math.inf)

    async def close(self) -> None:
        """Close persistent connection (for :memory: databases)."""
        await self._async.close()

    # --- Sync methods using standard sqlite3 module ---

    def append_sync(self, event: Event) -> None:
        """Synchronous append for non-async contexts."""
        validate_event(event, self._max_event_bytes)
        with translate_errors(), self._sync.connection() as conn:
            conn.execute(_INSERT_EVENT, _to_row(event))
            conn.commit()
        self._acknowledge(event)

    def query_sync(self, time_range: TimeRange, entity: str | None = None) -> list[Event]:
        """Synchronous range read for non-async contexts."""
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        with self._sync.connection() as conn:
            high_water = conn.execute(_MAX_ID).fetchone()[0]
            if entity is None:
                cursor = conn.execute(
                    _SELECT_RANGE, (time_range.start, time_range.end, high_water)
                )
            else:
                cursor = conn.execute(
                    _SELECT_RANGE_BY_ENTITY,
                    (entity, time_range.start, time_range.end, high_water),
                )
            return [_from_row(row) for row in cursor]

    def clear_sync(self) -> None:
        """Synchronous clear for non-async contexts."""
        with self._sync.connection() as conn:
            conn.execute(_CLEAR_EVENTS)
            conn.commit()
        self._purged(math.inf)
