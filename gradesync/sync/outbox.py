"""Client-side outbox for offline-first editing.

Local edits are queued here while the client is disconnected and pushed
later. Pulled items are cached with last-write-wins on ``ts`` and the pull
checkpoint is persisted so incremental sync survives restarts.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import UPSERT, ChangeRecord, MergedSyncItem, now_ms

logger = logging.getLogger(__name__)

OUTBOX_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL,
    type TEXT NOT NULL,
    doc TEXT,
    version INTEGER NOT NULL,
    client_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_synced ON outbox(synced_at);

CREATE TABLE IF NOT EXISTS pulled_items (
    id TEXT PRIMARY KEY,
    ts INTEGER NOT NULL,
    type TEXT NOT NULL,
    url TEXT,
    pulled_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass
class OutboxEntry:
    """A queued local change."""

    seq: int
    change: ChangeRecord
    attempts: int = 0
    last_error: str | None = None


class Outbox:
    """SQLite-backed queue of local changes waiting to be pushed."""

    def __init__(self, db_path: str | Path, client_id: str):
        """Initialize the outbox.

        Args:
            db_path: Path to SQLite database file.
            client_id: Identifier stamped on every queued change.
        """
        self.db_path = Path(db_path).expanduser()
        self.client_id = client_id
        self._conn: sqlite3.Connection | None = None
        self._last_ts: int = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(OUTBOX_SCHEMA)
        self._conn.commit()

        # Keep timestamps monotonic across restarts
        row = self._conn.execute("SELECT MAX(timestamp) FROM outbox").fetchone()
        if row[0] is not None:
            self._last_ts = row[0]

        logger.info(f"Outbox connected to {self.db_path}, client_id={self.client_id}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _tick(self) -> int:
        """Next local timestamp: wall clock, but never repeating."""
        self._last_ts = max(now_ms(), self._last_ts + 1)
        return self._last_ts

    def enqueue(
        self,
        record_id: str,
        change_type: str = UPSERT,
        doc: dict[str, Any] | None = None,
        version: int = 1,
    ) -> OutboxEntry:
        """Queue a local change.

        Raises:
            ValidationError: If the change is malformed.
        """
        conn = self._ensure_connected()

        change = ChangeRecord(
            id=record_id,
            type=change_type,
            doc=doc,
            version=version,
            client_id=self.client_id,
            timestamp=self._tick(),
        )
        change.validate()

        cursor = conn.execute(
            """
            INSERT INTO outbox (id, type, doc, version, client_id, timestamp, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change.id,
                change.type,
                json.dumps(change.doc) if change.doc is not None else None,
                change.version,
                change.client_id,
                change.timestamp,
                datetime.now().isoformat(),
            ),
        )
        conn.commit()

        logger.debug(f"Queued {change.type} for {change.id} at ts={change.timestamp}")
        return OutboxEntry(seq=cursor.lastrowid, change=change)

    def get_pending(self, limit: int = 100) -> list[OutboxEntry]:
        """Get changes that have not been accepted by the server, oldest first."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            SELECT * FROM outbox
            WHERE synced_at IS NULL
            ORDER BY seq ASC
            LIMIT ?
            """,
            (limit,),
        )

        return [
            OutboxEntry(
                seq=row["seq"],
                change=ChangeRecord(
                    id=row["id"],
                    type=row["type"],
                    doc=json.loads(row["doc"]) if row["doc"] else None,
                    version=row["version"],
                    client_id=row["client_id"],
                    timestamp=row["timestamp"],
                ),
                attempts=row["attempts"],
                last_error=row["last_error"],
            )
            for row in cursor
        ]

    def mark_synced(self, seqs: list[int]) -> int:
        """Mark queued changes as accepted by the server.

        Returns:
            Number of entries updated.
        """
        if not seqs:
            return 0

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(seqs))

        cursor = conn.execute(
            f"""
            UPDATE outbox
            SET synced_at = ?, last_error = NULL
            WHERE seq IN ({placeholders}) AND synced_at IS NULL
            """,
            (datetime.now().isoformat(), *seqs),
        )
        conn.commit()
        return cursor.rowcount

    def record_failure(self, seq: int, error: str) -> None:
        """Keep a rejected change queued and note why it failed."""
        conn = self._ensure_connected()
        conn.execute(
            "UPDATE outbox SET attempts = attempts + 1, last_error = ? WHERE seq = ?",
            (error, seq),
        )
        conn.commit()

    def apply_pulled(self, items: list[MergedSyncItem]) -> int:
        """Cache pulled items, keeping the newest ``ts`` per id.

        Returns:
            Number of cached items inserted or replaced.
        """
        if not items:
            return 0

        conn = self._ensure_connected()
        pulled_at = datetime.now().isoformat()
        updated = 0

        for item in items:
            cursor = conn.execute(
                """
                INSERT INTO pulled_items (id, ts, type, url, pulled_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    ts = excluded.ts,
                    type = excluded.type,
                    url = excluded.url,
                    pulled_at = excluded.pulled_at
                WHERE excluded.ts >= pulled_items.ts
                """,
                (item.id, item.ts, item.type, item.url, pulled_at),
            )
            updated += cursor.rowcount

        conn.commit()
        return updated

    def get_cached(self, record_id: str) -> MergedSyncItem | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT id, ts, type, url FROM pulled_items WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            return None
        return MergedSyncItem(ts=row["ts"], id=row["id"], type=row["type"], url=row["url"])

    def get_checkpoint(self) -> int:
        """Get the persisted pull checkpoint, 0 if never synced."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM sync_meta WHERE key = 'checkpoint'"
        ).fetchone()
        return int(row[0]) if row else 0

    def set_checkpoint(self, ts: int) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO sync_meta (key, value) VALUES ('checkpoint', ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (str(ts),),
        )
        conn.commit()

    def get_stats(self) -> dict[str, Any]:
        """Get outbox statistics."""
        conn = self._ensure_connected()

        stats = {
            "client_id": self.client_id,
            "checkpoint": self.get_checkpoint(),
        }
        stats["total_changes"] = conn.execute(
            "SELECT COUNT(*) FROM outbox"
        ).fetchone()[0]
        stats["pending_changes"] = conn.execute(
            "SELECT COUNT(*) FROM outbox WHERE synced_at IS NULL"
        ).fetchone()[0]
        stats["failed_changes"] = conn.execute(
            "SELECT COUNT(*) FROM outbox WHERE synced_at IS NULL AND attempts > 0"
        ).fetchone()[0]
        stats["cached_items"] = conn.execute(
            "SELECT COUNT(*) FROM pulled_items"
        ).fetchone()[0]

        return stats
