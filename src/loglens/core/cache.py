"""Result cache for materialized query pipelines.

Entries are keyed by (pipeline, time range, bucket size) and dropped as soon
as an event is appended inside their time range or purged from it.

A result computed while an invalidation was in flight must not be stored:
callers read ``generation`` before running the query and pass it to
``put``, which refuses the rows if an overlapping invalidation happened
since.
"""

import logging
import math
import threading
from collections import OrderedDict, deque
from collections.abc import Hashable
from typing import Any

from loglens.core.models import Event, TimeRange

logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, float, float, float | None]

DEFAULT_HISTORY = 1024


class QueryCache:
    """Bounded LRU cache of query results.

    Args:
        max_entries: Number of results kept before the least recently used
            entry is evicted.
        history: Number of recent invalidations remembered for ``put``.
            A ``put`` older than the remembered history is refused.
    """

    def __init__(self, max_entries: int = 128, history: int = DEFAULT_HISTORY) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[CacheKey, list[dict[str, Any]]] = OrderedDict()
        self._lock = threading.Lock()
        self._generation = 0
        # (generation, lo, hi): timestamps in [lo, hi) changed at generation
        self._invalidations: deque[tuple[int, float, float]] = deque(maxlen=history)
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(pipeline: Hashable, time_range: TimeRange, bucket_size: float | None) -> CacheKey:
        return (pipeline, time_range.start, time_range.end, bucket_size)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: CacheKey) -> list[dict[str, Any]] | None:
        with self._lock:
            rows = self._entries.get(key)
            if rows is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return [dict(r) for r in rows]

    def put(
        self,
        key: CacheKey,
        rows: list[dict[str, Any]],
        generation: int | None = None,
    ) -> bool:
        """Store rows computed from the data as of generation.

        Returns:
            False if the rows were refused because the key's range changed
            after generation.
        """
        with self._lock:
            if generation is not None and self._changed_since(key, generation):
                logger.debug("Refused stale result for %s", key[1:])
                return False
            self._entries[key] = [dict(r) for r in rows]
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
            return True

    def _changed_since(self, key: CacheKey, generation: int) -> bool:
        if generation >= self._generation:
            return False
        if not self._invalidations or self._invalidations[0][0] > generation + 1:
            return True
        start, end = key[1], key[2]
        return any(
            gen > generation and lo < end and hi > start
            for gen, lo, hi in self._invalidations
        )

    def _drop(self, lo: float, hi: float) -> int:
        self._generation += 1
        self._invalidations.append((self._generation, lo, hi))
        stale = [k for k in self._entries if lo < k[2] and hi > k[1]]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate(self, timestamp: float) -> int:
        """Drop every entry whose time range contains timestamp."""
        with self._lock:
            dropped = self._drop(timestamp, math.nextafter(timestamp, math.inf))
        if dropped:
            logger.debug("Invalidated %d cached results at %s", dropped, timestamp)
        return dropped

    def invalidate_before(self, cutoff: float) -> int:
        """Drop every entry whose time range starts before cutoff."""
        with self._lock:
            dropped = self._drop(-math.inf, cutoff)
        if dropped:
            logger.debug("Invalidated %d cached results before %s", dropped, cutoff)
        return dropped

    def on_event(self, event: Event) -> None:
        """Store listener: invalidate results overlapping a new event."""
        if event.timestamp is not None:
            self.invalidate(event.timestamp)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._invalidations.append((self._generation, -math.inf, math.inf))
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
