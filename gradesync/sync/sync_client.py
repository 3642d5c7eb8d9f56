"""Sync client for offline-capable gradesync clients.

Pushes queued local changes to the server and pulls incremental changes
from the last checkpoint, with retry and backoff on transient failures.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from .models import MergedSyncItem
from .outbox import Outbox

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-blob-token"


def _error_message(response: httpx.Response) -> str:
    """Extract the server's ``{"error": ...}`` message, else the raw body."""
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.text


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some changes rejected, or pull cut short
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    changes_pushed: int = 0
    changes_failed: int = 0
    items_pulled: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for synchronizing an Outbox with a gradesync server.

    Supports:
    - Push: Send queued changes; only rejected ones stay queued
    - Pull: Fetch changes since the stored checkpoint
    - Full sync: Push then pull
    """

    def __init__(
        self,
        outbox: Outbox,
        remote_url: str | None = None,
        token: str | None = None,
        batch_size: int = 100,
        pull_limit: int = 1000,
        max_pull_pages: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            outbox: Local outbox to sync.
            remote_url: Base URL of the server (e.g., "http://school:8080").
            token: Shared secret sent in the x-blob-token header.
            batch_size: Maximum changes per push.
            pull_limit: Maximum items per pull page.
            max_pull_pages: Pages fetched in one pull before giving up
                until the next sync.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, e.g. to call an app in-process.
        """
        self.outbox = outbox
        self.remote_url = remote_url
        self.token = token
        self.batch_size = batch_size
        self.pull_limit = pull_limit
        self.max_pull_pages = max_pull_pages
        self.max_retries = max_retries
        self.timeout = timeout
        self.transport = transport
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request, retrying while the server is unreachable or busy.

        Connection errors, timeouts and 503 (store busy) are retried with
        exponential backoff. Any other non-200 status is returned at once.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to remote_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.remote_url:
            return None, "No remote URL configured"

        url = f"{self.remote_url.rstrip('/')}{path}"
        headers = {TOKEN_HEADER: self.token} if self.token else {}
        backoff = 1.0
        busy = False

        async with httpx.AsyncClient(
            timeout=self.timeout, headers=headers, transport=self.transport
        ) as client:
            for attempt in range(self.max_retries):
                busy = False
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    message = _error_message(response)
                    if response.status_code != 503:
                        logger.warning(
                            f"{method} {path} failed: "
                            f"HTTP {response.status_code}: {message}"
                        )
                        return None, f"HTTP {response.status_code}: {message}"

                    busy = True
                    logger.warning(
                        f"Server busy on {path}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        if busy:
            return None, f"Server busy: max retries ({self.max_retries}) exceeded"
        return None, f"Connection failed: max retries ({self.max_retries}) exceeded"


    @staticmethod
    def _error_status(error: str) -> SyncStatus:
        return SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED

    async def push_changes(self) -> SyncResult:
        """Push queued changes to the server.

        Accepted changes (applied, duplicate or stale) are marked synced.
        Rejected changes stay queued with their error.

        Returns:
            SyncResult with push statistics.
        """
        if not self.remote_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No remote URL configured",
            )

        pending = self.outbox.get_pending(limit=self.batch_size)
        if not pending:
            return SyncResult(
                status=SyncStatus.SUCCESS,
                timestamp=datetime.now(),
            )

        payload = {"changes": [entry.change.to_dict() for entry in pending]}

        data, error = await self._request_with_retry("POST", "/sync/push", payload)

        if error:
            return SyncResult(status=self._error_status(error), error=error)

        accepted: list[int] = []
        failed = 0
        for result in data.get("results", []):
            index = result.get("index")
            if not isinstance(index, int) or not 0 <= index < len(pending):
                continue
            entry = pending[index]
            if result.get("status") == "failed":
                self.outbox.record_failure(entry.seq, result.get("error", "rejected"))
                failed += 1
            else:
                accepted.append(entry.seq)

        self.outbox.mark_synced(accepted)
        self._last_sync = datetime.now()

        if failed:
            logger.warning(f"Server rejected {failed} of {len(pending)} changes")

        return SyncResult(
            status=SyncStatus.PARTIAL if failed else SyncStatus.SUCCESS,
            changes_pushed=len(accepted),
            changes_failed=failed,
            timestamp=self._last_sync,
        )

    async def pull_changes(self, since: int | None = None) -> SyncResult:
        """Pull changes from the server.

        Pages through ``/sync/pull`` with an increasing ``offset`` until a
        page comes back short. The checkpoint advances to the server
        checkpoint read before the first page, and only once every page has
        been fetched. If ``max_pull_pages`` runs out first the result is
        PARTIAL and the next pull starts again from the same ``since``.

        Args:
            since: Only fetch changes after this timestamp. If None, uses
                the stored checkpoint.

        Returns:
            SyncResult with pull statistics.
        """
        if not self.remote_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No remote URL configured",
            )

        if since is None:
            since = self.outbox.get_checkpoint()

        cp_data, error = await self._request_with_retry("GET", "/sync/checkpoint")
        if error:
            return SyncResult(status=self._error_status(error), error=error)
        server_checkpoint = cp_data.get("checkpoint")

        pulled = 0
        complete = False
        for _ in range(self.max_pull_pages):
            params = {"since": since, "limit": self.pull_limit}
            if pulled:
                params["offset"] = pulled

            data, error = await self._request_with_retry(
                "GET", "/sync/pull", params=params
            )
            if error:
                return SyncResult(
                    status=self._error_status(error),
                    items_pulled=pulled,
                    error=error,
                )

            items = [MergedSyncItem.from_dict(item) for item in data.get("items", [])]
            self.outbox.apply_pulled(items)
            pulled += len(items)

            if len(items) < self.pull_limit:
                complete = True
                break

        self._last_sync = datetime.now()

        if not complete:
            logger.warning(
                f"Pull stopped after {self.max_pull_pages} pages "
                f"({pulled} items), checkpoint kept at {since}"
            )
            return SyncResult(
                status=SyncStatus.PARTIAL,
                items_pulled=pulled,
                error=f"Pull incomplete after {self.max_pull_pages} pages",
                timestamp=self._last_sync,
            )

        if server_checkpoint is not None and server_checkpoint > since:
            self.outbox.set_checkpoint(server_checkpoint)

        return SyncResult(
            status=SyncStatus.SUCCESS,
            items_pulled=pulled,
            timestamp=self._last_sync,
        )


    async def full_sync(self) -> SyncResult:
        """Perform push then pull.

        Returns:
            Combined SyncResult.
        """
        push_result = await self.push_changes()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull_changes()

        status = pull_result.status
        if status == SyncStatus.SUCCESS and push_result.status != SyncStatus.SUCCESS:
            status = push_result.status

        return SyncResult(
            status=status,
            changes_pushed=push_result.changes_pushed,
            changes_failed=push_result.changes_failed,
            items_pulled=pull_result.items_pulled,
            error=pull_result.error or push_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.changes_pushed}, "
                    f"failed={result.changes_failed}, "
                    f"pulled={result.items_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Back off while the server is unreachable
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        stats = self.outbox.get_stats()

        return {
            "remote_url": self.remote_url,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "checkpoint": stats["checkpoint"],
            "pending_changes": stats["pending_changes"],
            "failed_changes": stats["failed_changes"],
            "total_changes": stats["total_changes"],
        }
