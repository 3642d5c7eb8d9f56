"""Offline-first synchronization for gradesync.

Server side: an append-only change log, a last-write-wins change applier
and a pull merger that deduplicates log, snapshot and recently pushed
items. Client side: an outbox of local edits and an HTTP sync client.
"""

from .applier import BatchResult, ChangeApplier
from .change_log import ChangeLogStore
from .database import SyncDatabase
from .errors import (
    ApplyError,
    AuthError,
    StoreBusyError,
    StoreError,
    SyncError,
    ValidationError,
)
from .merger import (
    PullMerger,
    PushedBuffer,
    clamp_limit,
    clamp_offset,
    clamp_since,
    merge_items,
)
from .models import ChangeLogEntry, ChangeRecord, MergedSyncItem
from .outbox import Outbox
from .push import PushHandler
from .records import RecordStore
from .service import SyncService
from .sync_client import SyncClient

__all__ = [
    "ApplyError",
    "AuthError",
    "BatchResult",
    "ChangeApplier",
    "ChangeLogEntry",
    "ChangeLogStore",
    "ChangeRecord",
    "MergedSyncItem",
    "Outbox",
    "PullMerger",
    "PushHandler",
    "PushedBuffer",
    "RecordStore",
    "StoreBusyError",
    "StoreError",
    "SyncClient",
    "SyncDatabase",
    "SyncError",
    "SyncService",
    "ValidationError",
    "clamp_limit",
    "clamp_offset",
    "clamp_since",
    "merge_items",
]
