"""FastAPI application serving the sync endpoints."""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Config
from ..sync import SyncService
from ..sync.errors import AuthError, StoreBusyError, StoreError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-blob-token"


def create_app(config: Config, service: SyncService | None = None) -> FastAPI:
    """Create the FastAPI sync application.

    Args:
        config: Application configuration.
        service: Optional SyncService. Built from config if not given.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="gradesync",
        description="Offline-first sync service for school assessment records",
        version=__version__,
    )

    if service is None:
        service = SyncService.from_config(config)

    app.state.config = config
    app.state.service = service

    def _store_failure(
        operation: str, e: StoreError, message: str, detail: str = ""
    ) -> JSONResponse:
        if isinstance(e, StoreBusyError):
            logger.warning(f"[{operation}] store busy{detail}: {e}")
            return JSONResponse(status_code=503, content={"error": "Store busy"})
        logger.error(f"[{operation}] store error{detail}: {e}")
        return JSONResponse(status_code=500, content={"error": message})

    # ==================== Sync Routes ====================

    @app.get("/sync/checkpoint")
    async def sync_checkpoint():
        """Latest durable timestamp, null for an empty log."""
        try:
            checkpoint = await service.checkpoint()
        except StoreError as e:
            return _store_failure("sync_checkpoint", e, "Checkpoint failed")
        return {"checkpoint": checkpoint}

    @app.get("/sync/pull")
    async def sync_pull(request: Request):
        """Merged changes since a timestamp.

        ``since``, ``limit`` and ``offset`` are read raw so that bad values
        fall back to defaults instead of failing validation.
        """
        since = request.query_params.get("since")
        limit = request.query_params.get("limit")
        offset = request.query_params.get("offset")
        try:
            return await service.pull(since, limit, offset)
        except StoreError as e:
            detail = f" since={since!r} limit={limit!r} offset={offset!r}"
            return _store_failure("sync_pull", e, "Pull failed", detail)

    @app.post("/sync/push")
    async def sync_push(request: Request):
        """Apply a batch of client changes."""
        token = request.headers.get(TOKEN_HEADER)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None

        try:
            return await service.push(body, token)
        except AuthError:
            host = request.client.host if request.client else "unknown"
            logger.warning(f"[sync_push] rejected token from {host}")
            return JSONResponse(status_code=403, content={"error": "Forbidden"})
        except ValidationError as e:
            logger.warning(f"[sync_push] invalid payload: {e}")
            return JSONResponse(status_code=400, content={"error": str(e)})
        except StoreError as e:
            changes = body.get("changes") if isinstance(body, dict) else None
            count = len(changes) if isinstance(changes, list) else 0
            return _store_failure("sync_push", e, "Push failed", f" count={count}")

    # ==================== API Routes ====================

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get change log and record statistics."""
        stats: dict[str, Any] = {
            "node_name": config.node.name,
            "timestamp": datetime.now().isoformat(),
        }
        try:
            stats.update(service.get_stats())
        except StoreError as e:
            logger.error(f"[api_stats] store error: {e}")
            stats["error"] = "Stats unavailable"
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK even if the store is unavailable.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "node_name": config.node.name,
            "components": {
                "store": service.db.is_connected,
                "auth_required": bool(service.push_handler.token),
                "pushed_buffer_size": len(service.pushed),
            },
        }

        try:
            health["components"]["checkpoint"] = await service.checkpoint()
        except StoreError as e:
            logger.error(f"[api_health] store error: {e}")
            health["status"] = "degraded"
            health["components"]["store_error"] = "Store unavailable"

        return health

    return app
