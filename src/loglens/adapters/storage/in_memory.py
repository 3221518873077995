"""In-memory event store sharded by time.

Each shard covers a fixed slice of time and has its own writer lock, so
appends to different shards never contend. Readers take a snapshot when a
query is issued: a sequence-number high-water mark hides later appends, and
purges replace shard lists instead of mutating them, so a running query
keeps the lists it started with.
"""

import asyncio
import bisect
import itertools
import logging
import math
import threading
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from loglens.core.cancellation import CancellationToken
from loglens.core.events import DEFAULT_MAX_EVENT_BYTES, validate_event
from loglens.core.exceptions import OperationTimeoutError, ValidationError
from loglens.core.models import Event, RetentionPolicy, TimeRange

logger = logging.getLogger(__name__)

DEFAULT_SHARD_SECONDS = 3600.0

# Events between cooperative yields to the event loop during a scan
_YIELD_EVERY = 256

Entry = tuple[float, int, Event]


@dataclass
class _Shard:
    start: float
    end: float
    entries: list[Entry] = field(default_factory=list)
    by_entity: dict[str, list[Entry]] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class InMemoryEventStore:
    """In-memory implementation of EventStoragePort.

    Suitable for testing, embedded use and workloads where persistence is
    not required.

    Args:
        shard_seconds: Width of each time shard.
        max_event_bytes: Maximum encoded size of a single event.
        retention: Optional retention policy, applied lazily on append.
        clock: Wall-clock source used for retention.
    """

    def __init__(
        self,
        shard_seconds: float = DEFAULT_SHARD_SECONDS,
        max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if shard_seconds <= 0:
            raise ValidationError("shard_seconds must be positive")
        self._shard_seconds = shard_seconds
        self._max_event_bytes = max_event_bytes
        self._retention = retention
        self._clock = clock
        self._shards: dict[int, _Shard] = {}
        self._shards_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._high_water = 0
        self._listeners: list[Callable[[Event], None]] = []
        self._purge_listeners: list[Callable[[float], None]] = []

    def add_listener(self, callback: Callable[[Event], None]) -> None:
        """Register a callback invoked after every acknowledged append."""
        self._listeners.append(callback)

    def add_purge_listener(self, callback: Callable[[float], None]) -> None:
        """Register a callback invoked with the cutoff after events are purged."""
        self._purge_listeners.append(callback)

    def _purged(self, cutoff: float) -> None:
        for callback in self._purge_listeners:
            callback(cutoff)

    def _shard_for(self, timestamp: float) -> _Shard:
        key = math.floor(timestamp / self._shard_seconds)
        with self._shards_lock:
            shard = self._shards.get(key)
            if shard is None:
                start = key * self._shard_seconds
                shard = _Shard(start=start, end=start + self._shard_seconds)
                self._shards[key] = shard
            return shard

    def append_sync(self, event: Event) -> None:
        """Synchronous append for non-async contexts (logging handlers)."""
        validate_event(event, self._max_event_bytes)
        assert event.timestamp is not None
        shard = self._shard_for(event.timestamp)
        with shard.lock:
            seq = next(self._seq)
            entry = (event.timestamp, seq, event)
            if shard.entries and shard.entries[-1][:2] > entry[:2]:
                bisect.insort(shard.entries, entry)
            else:
                shard.entries.append(entry)
            per_entity = shard.by_entity.setdefault(event.entity, [])
            if per_entity and per_entity[-1][:2] > entry[:2]:
                bisect.insort(per_entity, entry)
            else:
                per_entity.append(entry)
            self._high_water = max(self._high_water, seq)
        for callback in self._listeners:
            callback(event)
        self._expire_lazily()

    async def append(self, event: Event, *, timeout: float | None = None) -> None:
        """Validate and store an event."""
        self.append_sync(event)

    def _expire_lazily(self) -> None:
        if self._retention is None:
            return
        cutoff = self._retention.cutoff(self._clock())
        if cutoff is None:
            return
        with self._shards_lock:
            expired = [k for k, s in self._shards.items() if s.end <= cutoff]
            for key in expired:
                del self._shards[key]
        if expired:
            self._purged(cutoff)
            logger.debug("Dropped %d expired shards", len(expired))

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

        The snapshot is taken when this method is called, not when iteration
        starts. Raises InvalidRangeError eagerly through TimeRange.
        """
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        high_water = self._high_water
        first = math.floor(time_range.start / self._shard_seconds)
        last = math.floor(time_range.end / self._shard_seconds)
        with self._shards_lock:
            shards = [self._shards[k] for k in sorted(self._shards) if first <= k <= last]
        lists: list[list[Entry]] = []
        for shard in shards:
            with shard.lock:
                if entity is None:
                    lists.append(shard.entries)
                elif entity in shard.by_entity:
                    lists.append(shard.by_entity[entity])
        deadline = None if timeout is None else time.monotonic() + timeout
        return self._scan(lists, time_range, high_water, predicate, deadline, token)

    async def _scan(
        self,
        lists: list[list[Entry]],
        time_range: TimeRange,
        high_water: int,
        predicate: Callable[[Any], bool] | None,
        deadline: float | None,
        token: CancellationToken | None,
    ) -> AsyncIterator[Event]:
        seen = 0
        for entries in lists:
            # Copy the slice so concurrent inserts cannot shift it under us
            lo = bisect.bisect_left(entries, (time_range.start,))
            hi = bisect.bisect_left(entries, (time_range.end,))
            chunk = entries[lo:hi]
            for ts, seq, event in chunk:
                seen += 1
                if seen % _YIELD_EVERY == 0:
                    await asyncio.sleep(0)
                if token is not None:
                    token.raise_if_cancelled()
                if deadline is not None and time.monotonic() >= deadline:
                    raise OperationTimeoutError("event store query exceeded its timeout")
                if seq > high_water:
                    continue
                if predicate is not None and not predicate(event.to_row()):
                    continue
                yield event

    async def purge_before(self, cutoff: float) -> int:
        """Delete events with timestamp < cutoff and return how many."""
        removed = 0
        with self._shards_lock:
            items = list(self._shards.items())
        for key, shard in items:
            if shard.start >= cutoff:
                continue
            with shard.lock:
                if shard.end <= cutoff:
                    removed += len(shard.entries)
                    with self._shards_lock:
                        self._shards.pop(key, None)
                    continue
                kept = [e for e in shard.entries if e[0] >= cutoff]
                removed += len(shard.entries) - len(kept)
                shard.entries = kept
                shard.by_entity = {
                    name: [e for e in entries if e[0] >= cutoff]
                    for name, entries in shard.by_entity.items()
                }
        if removed:
            logger.info("Purged %d events older than %s", removed, cutoff)
            self._purged(cutoff)
        return removed

    async def count(self) -> int:
        """Return total number of events in storage."""
        with self._shards_lock:
            shards = list(self._shards.values())
        return sum(len(s.entries) for s in shards)

    async def clear(self) -> None:
        """Clear all events from storage."""
        with self._shards_lock:
            self._shards = {}
        self._purged(math.inf)

    async def close(self) -> None:
        """Nothing to release; present for parity with durable stores."""
