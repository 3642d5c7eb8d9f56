"""SQLite database shared by the record store and the change log."""

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from .errors import StoreBusyError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30.0


async def run_blocking(
    func: Callable[..., T],
    *args: Any,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> T:
    """Run a blocking store call in a worker thread with a timeout.

    The thread itself cannot be cancelled; on timeout the call may still
    complete in the background.

    Raises:
        StoreBusyError: If the call does not finish within ``timeout``.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError:
        name = getattr(func, "__qualname__", repr(func))
        raise StoreBusyError(f"{name} timed out after {timeout}s") from None

SCHEMA = """
-- Authoritative records (students); deleted rows are kept as tombstones
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    doc TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    client_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    url TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_deleted ON records(deleted);

-- Change log: append-only, seq gives arrival order for equal ts
CREATE TABLE IF NOT EXISTS change_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    ts INTEGER NOT NULL,
    id TEXT NOT NULL,
    type TEXT NOT NULL,
    url TEXT,
    client_id TEXT,
    version INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_change_log_ts ON change_log(ts);
CREATE INDEX IF NOT EXISTS idx_change_log_id ON change_log(id, ts);
"""


class SyncDatabase:
    """Single SQLite connection guarded by a lock.

    Store calls are made from worker threads, so every access goes through
    ``read()`` or ``transaction()``.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open the connection and create the schema."""
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to open sync database: {e}") from e

        logger.info(f"SyncDatabase connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection for read-only queries."""
        with self._lock:
            conn = self._ensure_connected()
            try:
                yield conn
            except (sqlite3.Error, OverflowError) as e:
                raise StoreError(str(e)) from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a transaction.

        Commits on success and rolls back on any exception. Nested use joins
        the outer transaction.
        """
        with self._lock:
            conn = self._ensure_connected()
            if conn.in_transaction:
                yield conn
                return
            try:
                conn.execute("BEGIN")
                yield conn
                conn.commit()
            except (sqlite3.Error, OverflowError) as e:
                conn.rollback()
                raise StoreError(str(e)) from e
            except BaseException:
                conn.rollback()
                raise

    def size_mb(self) -> float | None:
        if isinstance(self.db_path, Path) and self.db_path.exists():
            return round(self.db_path.stat().st_size / (1024 * 1024), 2)
        return None
