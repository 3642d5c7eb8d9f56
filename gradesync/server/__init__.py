"""HTTP server exposing the sync endpoints."""

from .app import create_app

__all__ = ["create_app"]
