"""Cooperative cancellation and deadlines for long-running operations."""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

from loglens.core.exceptions import OperationTimeoutError, QueryCancelledError

T = TypeVar("T")


class CancellationToken:
    """Caller-owned token checked by queries between rows.

    Args:
        timeout: Optional number of seconds from now after which
            ``raise_if_cancelled`` raises OperationTimeoutError.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._cancelled = False
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def cancel(self) -> None:
        """Request cancellation."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        """Raise if the token was cancelled or its deadline has passed."""
        if self._cancelled:
            raise QueryCancelledError("query cancelled by caller")
        if self.expired:
            raise OperationTimeoutError("query deadline exceeded")


@asynccontextmanager
async def deadline(timeout: float | None, operation: str) -> AsyncIterator[None]:
    """Bound the enclosed block by timeout seconds.

    Raises:
        OperationTimeoutError: If the block does not finish in time.
    """
    if timeout is None:
        yield
        return
    try:
        async with asyncio.timeout(timeout):
            yield
    except TimeoutError as e:
        if isinstance(e, OperationTimeoutError):
            raise
        raise OperationTimeoutError(f"{operation} exceeded {timeout}s") from e


async def with_timeout(awaitable: Awaitable[T], timeout: float | None, operation: str) -> T:
    """Await with an optional timeout surfaced as OperationTimeoutError."""
    async with deadline(timeout, operation):
        return await awaitable
