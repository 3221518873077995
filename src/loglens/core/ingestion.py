"""Ingestion boundary: buffers events and retries transient store failures."""

import asyncio
import logging
from collections import deque
from collections.abc import Iterable

from loglens.core.events import DEFAULT_MAX_EVENT_BYTES, validate_event
from loglens.core.exceptions import TransientStorageError
from loglens.core.models import Event
from loglens.core.ports import EventStoragePort

logger = logging.getLogger(__name__)


class IngestionBuffer:
    """Front door for writes into an EventStoragePort.

    ``submit`` writes one event and returns once the store has acknowledged
    it. ``enqueue`` only validates and buffers; ``flush`` then writes the
    buffered events in arrival order. Both retry TransientStorageError with
    exponential backoff before giving up.

    Args:
        store: Destination store.
        max_pending: Buffered events accepted before enqueue refuses more.
        max_retries: Retries after the first failed attempt.
        backoff: Delay before the first retry, doubled on each retry.
        max_event_bytes: Size limit checked at enqueue time.
    """

    def __init__(
        self,
        store: EventStoragePort,
        max_pending: int = 10_000,
        max_retries: int = 3,
        backoff: float = 0.05,
        max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES,
    ) -> None:
        self._store = store
        self._max_pending = max_pending
        self._max_retries = max_retries
        self._backoff = backoff
        self._max_event_bytes = max_event_bytes
        self._pending: deque[Event] = deque()
        self._flush_lock = asyncio.Lock()
        self.acknowledged = 0
        self.retries = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def max_event_bytes(self) -> int:
        return self._max_event_bytes

    async def submit(self, event: Event, *, timeout: float | None = None) -> None:
        """Write one event, retrying transient failures.

        Raises:
            ValidationError: If the event is invalid. Never retried.
            TransientStorageError: If every attempt failed.
            OperationTimeoutError: If an attempt exceeds timeout.
        """
        validate_event(event, self._max_event_bytes)
        await self._append_with_retry(event, timeout)

    def enqueue(self, event: Event) -> None:
        """Validate and buffer an event for the next flush.

        Raises:
            ValidationError: If the event is invalid.
            TransientStorageError: If the buffer is full.
        """
        validate_event(event, self._max_event_bytes)
        if len(self._pending) >= self._max_pending:
            raise TransientStorageError(
                f"ingestion buffer is full ({self._max_pending} events)"
            )
        self._pending.append(event)

    def enqueue_many(self, events: Iterable[Event]) -> int:
        count = 0
        for event in events:
            self.enqueue(event)
            count += 1
        return count

    async def flush(self, *, timeout: float | None = None) -> int:
        """Write buffered events in order and return how many were written.

        If an event still fails after all retries, it and every event after
        it stay buffered and the error is raised.
        """
        written = 0
        async with self._flush_lock:
            while self._pending:
                await self._append_with_retry(self._pending[0], timeout)
                self._pending.popleft()
                written += 1
        return written

    async def _append_with_retry(self, event: Event, timeout: float | None) -> None:
        delay = self._backoff
        attempt = 0
        while True:
            try:
                await self._store.append(event, timeout=timeout)
            except TransientStorageError as e:
                if attempt >= self._max_retries:
                    logger.error(
                        "Giving up on event for %s after %d attempts: %s",
                        event.entity,
                        attempt + 1,
                        e,
                    )
                    raise
                attempt += 1
                self.retries += 1
                logger.warning(
                    "Transient storage failure (attempt %d/%d): %s",
                    attempt,
                    self._max_retries + 1,
                    e,
                )
                await asyncio.sleep(delay)
                delay *= 2
            else:
                self.acknowledged += 1
                return
