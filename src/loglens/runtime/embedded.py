"""Background retention sweep for an embedded engine."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from types import TracebackType

from loglens.core.models import RetentionPolicy
from loglens.core.ports import EventStoragePort

logger = logging.getLogger(__name__)


class EmbeddedRuntime:
    """Runs retention purges on a fixed interval in an asyncio task.

    Example:
        ```python
        async with EmbeddedRuntime(store, RetentionPolicy(7 * 86400)):
            ...
        ```

    Args:
        store: Store to purge.
        retention: Age limit applied on each sweep.
        interval: Seconds between sweeps.
        clock: Time source for the retention cutoff.
    """

    def __init__(
        self,
        store: EventStoragePort,
        retention: RetentionPolicy,
        interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._retention = retention
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.purged = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Purge expired events now and return how many were removed."""
        cutoff = self._retention.cutoff(self._clock())
        if cutoff is None:
            return 0
        deleted = await self._store.purge_before(cutoff)
        self.purged += deleted
        return deleted

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Retention sweep failed")
            await asyncio.sleep(self._interval)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.debug("Retention sweep started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug("Retention sweep stopped")

    async def __aenter__(self) -> "EmbeddedRuntime":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
