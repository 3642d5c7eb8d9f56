"""Applies client changes to the record store and logs them.

Conflicts resolve by last-write-wins on the client ``timestamp``: a change
older than the stored record is skipped as stale. Equal timestamps go to
the later arrival. Re-applying a change already reflected in the store is
a no-op and writes no log entry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .change_log import ChangeLogStore
from .errors import ApplyError, ValidationError
from .models import DELETE, ChangeLogEntry, ChangeRecord
from .records import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
STALE = "stale"
FAILED = "failed"


@dataclass
class ApplyOutcome:
    """Result of applying one change."""

    change: ChangeRecord
    status: str
    entry: ChangeLogEntry | None = None


@dataclass
class BatchResult:
    """Per-item results of a push batch."""

    results: list[dict[str, Any]] = field(default_factory=list)
    outcomes: list[ApplyOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r["status"] == status)

    @property
    def failed(self) -> list[dict[str, Any]]:
        return [r for r in self.results if r["status"] == FAILED]

    @property
    def accepted_ids(self) -> list[str]:
        return [r["id"] for r in self.results if r["status"] != FAILED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON body returned by /sync/push."""
        return {
            "total": len(self.results),
            "applied": self._count(APPLIED),
            "duplicates": self._count(DUPLICATE),
            "stale": self._count(STALE),
            "failed": self.failed,
            "accepted_ids": self.accepted_ids,
            "results": self.results,
        }


class ChangeApplier:
    """Validates and applies changes to the authoritative store."""

    def __init__(self, records: RecordStore, change_log: ChangeLogStore):
        self.records = records
        self.change_log = change_log
        # Record store and change log must share one database
        self.db = records.db

    def apply(self, change: ChangeRecord) -> ApplyOutcome:
        """Apply a single change.

        The record write and the log append commit in one transaction.

        Args:
            change: Change to apply.

        Returns:
            ApplyOutcome with status applied, duplicate or stale.

        Raises:
            ValidationError: If the change is malformed.
            ApplyError: If the change conflicts with the record it targets.
            StoreError: If the store cannot be written.
        """
        change.validate()
        if change.doc and "id" in change.doc and str(change.doc["id"]) != change.id:
            raise ApplyError(
                change.id, f"doc id {change.doc['id']!r} does not match change id"
            )

        with self.db.transaction() as conn:
            stored = self.records.get(change.id, conn)

            if stored is not None:
                if change.timestamp < stored.timestamp:
                    logger.debug(
                        f"Skipping stale change {change.id} "
                        f"(ts={change.timestamp} < stored {stored.timestamp})"
                    )
                    return ApplyOutcome(change=change, status=STALE)
                if _is_same_change(stored, change):
                    return ApplyOutcome(change=change, status=DUPLICATE)

            deleted = change.type == DELETE
            url = stored.url if deleted and stored else change.url
            self.records.put(
                conn,
                StoredRecord(
                    id=change.id,
                    doc=None if deleted else change.doc,
                    version=change.version,
                    client_id=change.client_id,
                    timestamp=change.timestamp,
                    deleted=deleted,
                    url=url,
                ),
            )
            entry = ChangeLogEntry(
                ts=change.timestamp,
                id=change.id,
                type=change.type,
                url=url,
                client_id=change.client_id,
                version=change.version,
            )
            self.change_log.append([entry], conn=conn)

        return ApplyOutcome(change=change, status=APPLIED, entry=entry)

    def apply_batch(self, changes: list[Any]) -> BatchResult:
        """Apply a batch of raw or parsed changes in order.

        Item-level validation and apply errors are collected in the result
        and do not stop the batch. StoreError propagates.
        """
        result = BatchResult()

        for index, raw in enumerate(changes):
            change_id = _raw_id(raw)
            try:
                change = raw if isinstance(raw, ChangeRecord) else ChangeRecord.from_dict(raw)
                outcome = self.apply(change)
            except (ValidationError, ApplyError) as e:
                logger.warning(f"Change {index} (id={change_id!r}) rejected: {e}")
                result.results.append(
                    {"index": index, "id": change_id, "status": FAILED, "error": str(e)}
                )
                continue

            result.outcomes.append(outcome)
            result.results.append(
                {"index": index, "id": change.id, "status": outcome.status}
            )

        logger.info(
            f"Applied batch: total={len(changes)}, "
            f"applied={result._count(APPLIED)}, "
            f"duplicates={result._count(DUPLICATE)}, "
            f"stale={result._count(STALE)}, failed={len(result.failed)}"
        )
        return result


def _is_same_change(stored: StoredRecord, change: ChangeRecord) -> bool:
    if stored.timestamp != change.timestamp or stored.version != change.version:
        return False
    if change.type == DELETE:
        return stored.deleted
    return not stored.deleted and stored.doc == change.doc


def _raw_id(raw: Any) -> str:
    if isinstance(raw, ChangeRecord):
        return raw.id
    if isinstance(raw, dict) and raw.get("id") is not None:
        return str(raw["id"])
    return ""
