"""Append-only change log with checkpoint tracking.

Every applied change is recorded here. Pull requests read it back as
"what changed since timestamp T", newest first, one entry per record id.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any

from .database import SyncDatabase
from .models import ChangeLogEntry

logger = logging.getLogger(__name__)


class ChangeLogStore:
    """Durable, append-only list of change log entries."""

    def __init__(self, db: SyncDatabase):
        self.db = db

    def append(
        self,
        entries: list[ChangeLogEntry],
        conn: sqlite3.Connection | None = None,
    ) -> list[ChangeLogEntry]:
        """Append entries in order.

        Args:
            entries: Entries to write. Their ``seq`` is filled in.
            conn: Connection of an open transaction to join. If None, the
                entries are written in a transaction of their own.

        Returns:
            The appended entries.
        """
        if not entries:
            return []

        if conn is None:
            with self.db.transaction() as tx:
                return self._insert(tx, entries)
        return self._insert(conn, entries)

    def _insert(
        self, conn: sqlite3.Connection, entries: list[ChangeLogEntry]
    ) -> list[ChangeLogEntry]:
        created_at = datetime.now().isoformat()
        for entry in entries:
            cursor = conn.execute(
                """
                INSERT INTO change_log (ts, id, type, url, client_id, version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.ts,
                    entry.id,
                    entry.type,
                    entry.url,
                    entry.client_id,
                    entry.version,
                    created_at,
                ),
            )
            entry.seq = cursor.lastrowid

        logger.debug(f"Appended {len(entries)} change log entries")
        return entries

    def query(self, since: int, limit: int) -> list[ChangeLogEntry]:
        """Get the newest entry per record id with ``ts > since``.

        Args:
            since: Exclusive lower bound on ``ts``.
            limit: Maximum entries to return.

        Returns:
            Entries ordered newest first (``ts`` then ``seq`` descending).
        """
        with self.db.read() as conn:
            cursor = conn.execute(
                """
                SELECT seq, ts, id, type, url, client_id, version FROM (
                    SELECT *, ROW_NUMBER() OVER (
                        PARTITION BY id ORDER BY ts DESC, seq DESC
                    ) AS rn
                    FROM change_log
                    WHERE ts > ?
                )
                WHERE rn = 1
                ORDER BY ts DESC, seq DESC
                LIMIT ?
                """,
                (since, limit),
            )
            return [_row_to_entry(row) for row in cursor]

    def get_history(self, record_id: str) -> list[ChangeLogEntry]:
        """Get every entry for one record, in arrival order."""
        with self.db.read() as conn:
            cursor = conn.execute(
                """
                SELECT seq, ts, id, type, url, client_id, version
                FROM change_log WHERE id = ? ORDER BY seq ASC
                """,
                (record_id,),
            )
            return [_row_to_entry(row) for row in cursor]

    def get_checkpoint(self) -> int | None:
        """Get the highest timestamp in the log.

        Returns:
            Highest ``ts``, or None if the log is empty.
        """
        with self.db.read() as conn:
            row = conn.execute("SELECT MAX(ts) FROM change_log").fetchone()
            return row[0]

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics."""
        with self.db.read() as conn:
            stats: dict[str, Any] = {
                "total_entries": conn.execute(
                    "SELECT COUNT(*) FROM change_log"
                ).fetchone()[0],
                "distinct_ids": conn.execute(
                    "SELECT COUNT(DISTINCT id) FROM change_log"
                ).fetchone()[0],
            }
            cursor = conn.execute(
                "SELECT type, COUNT(*) FROM change_log GROUP BY type"
            )
            stats["entries_by_type"] = {row[0]: row[1] for row in cursor}

        if (size := self.db.size_mb()) is not None:
            stats["db_size_mb"] = size
        return stats


def _row_to_entry(row: sqlite3.Row) -> ChangeLogEntry:
    return ChangeLogEntry(
        ts=row["ts"],
        id=row["id"],
        type=row["type"],
        url=row["url"],
        client_id=row["client_id"],
        version=row["version"],
        seq=row["seq"],
    )
