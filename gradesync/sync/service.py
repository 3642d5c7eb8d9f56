"""Server-side sync service wiring the stores, merger and push handler."""

import logging
from pathlib import Path
from typing import Any

from ..config import Config
from .applier import ChangeApplier
from .change_log import ChangeLogStore
from .database import DEFAULT_TIMEOUT_SECONDS, SyncDatabase, run_blocking
from .merger import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    PullMerger,
    PushedBuffer,
    clamp_limit,
    clamp_offset,
    clamp_since,
)
from .push import PushHandler
from .records import RecordStore

logger = logging.getLogger(__name__)


class SyncService:
    """Owns the sync database and answers checkpoint, pull and push calls."""

    def __init__(
        self,
        db_path: str | Path,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pushed_preserve_type: bool = False,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        """Initialize the service.

        Args:
            db_path: Path to the server SQLite database, or ":memory:".
            token: Shared secret for pushes. None disables the check.
            timeout: Seconds allowed for each store call.
            pushed_preserve_type: Report real change types for buffered
                pushes instead of always "upsert".
            default_limit: Pull limit used when none is given.
            max_limit: Upper bound for the pull limit.
        """
        self.db = SyncDatabase(db_path)
        self.records = RecordStore(self.db)
        self.change_log = ChangeLogStore(self.db)
        self.pushed = PushedBuffer(preserve_type=pushed_preserve_type)
        self.applier = ChangeApplier(self.records, self.change_log)
        self.merger = PullMerger(self.change_log, self.records, self.pushed, timeout)
        self.push_handler = PushHandler(self.applier, self.pushed, token, timeout)
        self.timeout = timeout
        self.default_limit = default_limit
        self.max_limit = max_limit

    @classmethod
    def from_config(cls, config: Config) -> "SyncService":
        return cls(
            db_path=config.store.db_path,
            token=config.sync.token,
            timeout=config.server.request_timeout_seconds,
            pushed_preserve_type=config.sync.pushed_preserve_type,
            default_limit=config.sync.default_limit,
            max_limit=config.sync.max_limit,
        )

    def connect(self) -> None:
        self.db.connect()

    def close(self) -> None:
        self.db.close()

    async def checkpoint(self) -> int | None:
        """Get the latest durable timestamp, or None for an empty log."""
        return await run_blocking(self.change_log.get_checkpoint, timeout=self.timeout)

    async def pull(
        self, since: Any = None, limit: Any = None, offset: Any = None
    ) -> dict[str, Any]:
        """Pull merged items from raw ``since``/``limit``/``offset`` query values."""
        since_value = clamp_since(since)
        limit_value = clamp_limit(limit, self.default_limit, self.max_limit)
        result = await self.merger.pull(since_value, limit_value, clamp_offset(offset))
        return result.to_dict()

    async def push(self, body: Any, token: str | None = None) -> dict[str, Any]:
        return await self.push_handler.push(body, token)

    def get_stats(self) -> dict[str, Any]:
        """Get change log and record statistics."""
        stats = self.change_log.get_stats()
        stats.update(self.records.get_stats())
        stats["checkpoint"] = self.change_log.get_checkpoint()
        stats["pushed_buffer_size"] = len(self.pushed)
        return stats
