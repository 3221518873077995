"""Connection management shared by SQLite storage adapters."""

import asyncio
import sqlite3
import threading
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

import aiosqlite

from loglens.core.exceptions import TransientStorageError

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "disk i/o error")


def is_transient(error: sqlite3.Error) -> bool:
    """Return True for SQLite errors that may succeed on retry."""
    message = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and any(
        marker in message for marker in _TRANSIENT_MARKERS
    )


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise lock/busy errors as TransientStorageError."""
    try:
        yield
    except sqlite3.Error as e:
        if is_transient(e):
            raise TransientStorageError(str(e)) from e
        raise


class AsyncConnectionManager:
    """Manages async (aiosqlite) database connections.

    Handles schema initialization and connection lifecycle for async contexts.
    For :memory: databases, maintains a persistent connection since SQLite
    in-memory databases are connection-scoped.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._initialized = False
        self._init_lock: asyncio.Lock | None = None
        self._persistent_conn: aiosqlite.Connection | None = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the initialization lock (lazy to avoid event loop issues)."""
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    @property
    def in_memory(self) -> bool:
        return self._db_path == ":memory:"

    async def _ensure_initialized(self) -> None:
        """Initialize database schema once."""
        if self._initialized:
            return
        async with self._get_lock():
            if self._initialized:
                return
            if self.in_memory:
                self._persistent_conn = await aiosqlite.connect(":memory:")
                await self._persistent_conn.executescript(self._schema)
            else:
                async with aiosqlite.connect(self._db_path) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.executescript(self._schema)
            self._initialized = True

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a database connection."""
        await self._ensure_initialized()
        if self.in_memory:
            if self._persistent_conn is None:
                raise RuntimeError("Memory database connection not initialized")
            return self._persistent_conn
        return await aiosqlite.connect(self._db_path)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for async database connections.

        Automatically closes connections for file-based databases.
        For :memory: databases, keeps connections open (they're persistent).
        """
        db = await self._get_connection()
        try:
            yield db
        finally:
            if not self.in_memory:
                await db.close()

    async def close(self) -> None:
        """Close persistent connection (for :memory: databases)."""
        if self._persistent_conn is not None:
            await self._persistent_conn.close()
            self._persistent_conn = None
            self._initialized = False


class SyncConnectionManager:
    """Manages sync (sqlite3) database connections.

    For :memory: databases this manager holds a separate database instance
    from AsyncConnectionManager; sync and async calls do not share data.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._initialized = False
        self._lock = threading.Lock()
        self._persistent_conn: sqlite3.Connection | None = None

    @property
    def in_memory(self) -> bool:
        return self._db_path == ":memory:"

    def _ensure_initialized(self) -> None:
        """Initialize database schema synchronously."""
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if self.in_memory:
                self._persistent_conn = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._persistent_conn.executescript(self._schema)
            else:
                with sqlite3.connect(self._db_path) as db:
                    db.execute("PRAGMA journal_mode=WAL")
                    db.executescript(self._schema)
            self._initialized = True

    def _get_connection(self) -> sqlite3.Connection:
        """Get a sync database connection."""
        self._ensure_initialized()
        if self.in_memory:
            if self._persistent_conn is None:
                raise RuntimeError("Sync memory database connection not initialized")
            return self._persistent_conn
        return sqlite3.connect(self._db_path)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for sync database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            if not self.in_memory:
                conn.close()
