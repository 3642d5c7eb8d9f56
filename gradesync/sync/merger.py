"""Merges change log, snapshot and recently pushed items for a pull."""

import logging
import math
from dataclasses import dataclass
from typing import Any

from .change_log import ChangeLogStore
from .database import DEFAULT_TIMEOUT_SECONDS, run_blocking
from .models import INT64_MAX, UPSERT, MergedSyncItem, now_ms
from .records import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 1000
MAX_LIMIT = 10000


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_since(value: Any) -> int:
    """Parse a ``since`` parameter into ``[0, INT64_MAX]``.

    Negative or unparseable values give 0.
    """
    number = _to_number(value)
    if number is None or number < 0:
        return 0
    return min(int(number), INT64_MAX)


def clamp_offset(value: Any) -> int:
    """Parse an ``offset`` parameter. Same rules as ``since``."""
    return clamp_since(value)


def clamp_limit(
    value: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT
) -> int:
    """Parse a ``limit`` parameter into ``[1, maximum]``."""
    number = _to_number(value)
    if number is None:
        return default
    return max(1, min(maximum, int(number)))


def merge_items(
    sources: list[list[MergedSyncItem]], limit: int
) -> list[MergedSyncItem]:
    """Merge item lists, newest first, keeping one item per id.

    The sort is stable, so for equal ``ts`` an item from an earlier source
    (or earlier in its source) wins.

    Args:
        sources: Item lists in priority order.
        limit: Maximum number of items to keep.

    Returns:
        Kept items in descending ``ts`` order.
    """
    combined = [item for items in sources for item in items]
    combined.sort(key=lambda item: item.ts, reverse=True)

    seen: set[str] = set()
    merged: list[MergedSyncItem] = []
    for item in combined:
        if item.id in seen:
            continue
        seen.add(item.id)
        merged.append(item)
        if len(merged) >= limit:
            break
    return merged


class PushedBuffer:
    """Single-slot cache of the last successful push batch.

    Lives for the process lifetime and is replaced on every push, so a pull
    right after a push sees its items. It is not a durability mechanism.
    """

    def __init__(self, preserve_type: bool = False):
        """Initialize the buffer.

        Args:
            preserve_type: Report each item's original change type. When
                False every item is reported as an upsert.
        """
        self.preserve_type = preserve_type
        self._items: list[MergedSyncItem] = []

    def replace(self, items: list[MergedSyncItem]) -> None:
        self._items = list(items)

    def clear(self) -> None:
        self._items = []

    def items(self) -> list[MergedSyncItem]:
        if self.preserve_type:
            return list(self._items)
        return [
            MergedSyncItem(ts=item.ts, id=item.id, type=UPSERT, url=item.url)
            for item in self._items
        ]

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class PullResult:
    items: list[MergedSyncItem]
    change_count: int
    snapshot_count: int
    pushed_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items]}


class PullMerger:
    """Answers "everything that changed since T, capped at N"."""

    def __init__(
        self,
        change_log: ChangeLogStore,
        records: RecordStore,
        pushed: PushedBuffer,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.change_log = change_log
        self.records = records
        self.pushed = pushed
        self.timeout = timeout

    def snapshot_items(self) -> list[MergedSyncItem]:
        """Synthesize upsert items for every active record.

        The synthesized ``ts`` is the current time, raised above the log
        checkpoint when client clocks run ahead, so snapshot items always
        sort before log entries and page offsets stay stable.
        """
        checkpoint = self.change_log.get_checkpoint()
        ts = now_ms()
        if checkpoint is not None and ts <= checkpoint:
            ts = checkpoint + 1
        return [
            MergedSyncItem(ts=ts, id=record.id, type=UPSERT, url=record.url)
            for record in self.records.list_active()
        ]

    async def pull(self, since: int, limit: int, offset: int = 0) -> PullResult:
        """Build the merged pull result.

        Args:
            since: Already-clamped exclusive lower bound on ``ts``.
            limit: Already-clamped maximum result size.
            offset: Already-clamped number of merged items to skip, for
                clients paging through more than ``limit`` items.

        Raises:
            StoreError: If the log or the snapshot cannot be read.
        """
        window = min(offset + limit, INT64_MAX)
        entries = await run_blocking(
            self.change_log.query, since, window, timeout=self.timeout
        )
        change_items = [entry.to_item() for entry in entries]

        snapshot = []
        if since == 0:
            snapshot = await run_blocking(self.snapshot_items, timeout=self.timeout)

        pushed_items = self.pushed.items()

        merged = merge_items([change_items, snapshot, pushed_items], window)[offset:]

        logger.info(
            f"Pull since={since} limit={limit} offset={offset}: "
            f"changes={len(change_items)}, snapshot={len(snapshot)}, "
            f"pushed={len(pushed_items)}, merged={len(merged)}"
        )

        return PullResult(
            items=merged,
            change_count=len(change_items),
            snapshot_count=len(snapshot),
            pushed_count=len(pushed_items),
        )
