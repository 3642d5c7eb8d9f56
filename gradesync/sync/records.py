"""Authoritative record store for synchronized student records."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .database import SyncDatabase

logger = logging.getLogger(__name__)


@dataclass
class StoredRecord:
    """The current server-side state of one record."""

    id: str
    doc: dict[str, Any] | None
    version: int
    client_id: str
    timestamp: int
    deleted: bool = False
    url: str | None = None
    updated_at: str | None = None


class RecordStore:
    """Reads and writes rows of the ``records`` table.

    Write methods take the connection of the caller's transaction so that
    the record write and its change log entry commit together.
    """

    def __init__(self, db: SyncDatabase):
        self.db = db

    def get(self, record_id: str, conn: sqlite3.Connection | None = None) -> StoredRecord | None:
        """Get a record by id, including tombstones."""
        if conn is not None:
            return self._get(conn, record_id)
        with self.db.read() as c:
            return self._get(c, record_id)

    def _get(self, conn: sqlite3.Connection, record_id: str) -> StoredRecord | None:
        row = conn.execute(
            "SELECT * FROM records WHERE id = ?", (record_id,)
        ).fetchone()
        return _row_to_record(row) if row else None

    def put(self, conn: sqlite3.Connection, record: StoredRecord) -> None:
        """Insert or fully replace a record."""
        conn.execute(
            """
            INSERT INTO records (id, doc, version, client_id, timestamp, deleted, url, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                doc = excluded.doc,
                version = excluded.version,
                client_id = excluded.client_id,
                timestamp = excluded.timestamp,
                deleted = excluded.deleted,
                url = excluded.url,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                json.dumps(record.doc) if record.doc is not None else None,
                record.version,
                record.client_id,
                record.timestamp,
                1 if record.deleted else 0,
                record.url,
                datetime.now().isoformat(),
            ),
        )

    def list_active(self) -> list[StoredRecord]:
        """Get every record that is not deleted, used to seed new clients."""
        with self.db.read() as conn:
            cursor = conn.execute(
                "SELECT * FROM records WHERE deleted = 0 ORDER BY id"
            )
            return [_row_to_record(row) for row in cursor]

    def get_stats(self) -> dict[str, Any]:
        with self.db.read() as conn:
            total = conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            deleted = conn.execute(
                "SELECT COUNT(*) FROM records WHERE deleted = 1"
            ).fetchone()[0]
        return {
            "record_count": total - deleted,
            "deleted_count": deleted,
        }


def _row_to_record(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        id=row["id"],
        doc=json.loads(row["doc"]) if row["doc"] else None,
        version=row["version"],
        client_id=row["client_id"],
        timestamp=row["timestamp"],
        deleted=bool(row["deleted"]),
        url=row["url"],
        updated_at=row["updated_at"],
    )
