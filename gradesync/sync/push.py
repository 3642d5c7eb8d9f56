"""Handles pushed batches of client changes."""

import hmac
import logging
from typing import Any

from .applier import APPLIED, DUPLICATE, BatchResult, ChangeApplier
from .database import DEFAULT_TIMEOUT_SECONDS, run_blocking
from .errors import AuthError, ValidationError
from .merger import PushedBuffer
from .models import MergedSyncItem

logger = logging.getLogger(__name__)


def check_token(expected: str | None, provided: str | None) -> None:
    """Compare a pushed token against the configured secret.

    No configured secret means pushes are not authenticated.

    Raises:
        AuthError: If a secret is configured and ``provided`` differs.
    """
    if not expected:
        return
    if not hmac.compare_digest(expected.encode(), (provided or "").encode()):
        raise AuthError("Forbidden")


class PushHandler:
    """Authenticates a push batch and feeds it to the applier."""

    def __init__(
        self,
        applier: ChangeApplier,
        pushed: PushedBuffer,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.applier = applier
        self.pushed = pushed
        self.token = token
        self.timeout = timeout

    async def push(self, body: Any, provided_token: str | None = None) -> dict[str, Any]:
        """Apply a push request body.

        Args:
            body: Parsed JSON body, expected to be ``{"changes": [...]}``.
            provided_token: Value of the ``x-blob-token`` header.

        Returns:
            Batch result dict with an ``ok`` flag.

        Raises:
            AuthError: On token mismatch. Nothing is applied.
            ValidationError: If ``changes`` is missing or not a list.
            StoreError: If the store fails mid-batch.
        """
        check_token(self.token, provided_token)

        changes = body.get("changes") if isinstance(body, dict) else None
        if not isinstance(changes, list):
            raise ValidationError("Invalid changes payload")

        result: BatchResult = await run_blocking(
            self.applier.apply_batch, changes, timeout=self.timeout
        )

        self.pushed.replace(
            [
                MergedSyncItem(
                    ts=outcome.change.timestamp,
                    id=outcome.change.id,
                    type=outcome.change.type,
                    url=outcome.change.url,
                )
                for outcome in result.outcomes
                if outcome.status in (APPLIED, DUPLICATE)
            ]
        )

        logger.info(
            f"Push: count={len(changes)}, accepted={len(result.accepted_ids)}, "
            f"failed={len(result.failed)}"
        )
        return {"ok": not result.failed, **result.to_dict()}
