"""Port interfaces for storage and notification adapters.

These protocols define the contracts that adapters must implement.
The core domain depends only on these interfaces, not concrete implementations.
"""

from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol, runtime_checkable

from loglens.core.cancellation import CancellationToken
from loglens.core.models import AlertEvent, Event, TimeRange


@runtime_checkable
class EventStoragePort(Protocol):
    """Port for event storage operations.

    Adapters implementing this protocol store events append-only and serve
    time-range reads. Examples: InMemoryEventStore, SQLiteEventStore.
    """

    async def append(self, event: Event, *, timeout: float | None = None) -> None:
        """Validate and store an event.

        Raises:
            ValidationError: If the timestamp is missing or the event is too large.
            OperationTimeoutError: If the write does not finish within timeout.
        """
        ...

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

        The result reflects the store as of the call; events appended or
        purged afterwards are not visible to it.
        """
        ...

    async def purge_before(self, cutoff: float) -> int:
        """Delete events with timestamp < cutoff and return how many."""
        ...

    async def count(self) -> int:
        """Return the number of stored events."""
        ...


@runtime_checkable
class NotificationChannelPort(Protocol):
    """Port for delivering alerts to an external notification system."""

    async def send(self, alert: AlertEvent) -> None:
        """Deliver one alert."""
        ...
