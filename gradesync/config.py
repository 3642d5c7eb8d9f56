"""Configuration loading for gradesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "gradesync-server"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    request_timeout_seconds: float = 30.0


@dataclass
class StoreConfig:
    """Configuration for the authoritative record store and change log."""

    db_path: str = "~/.gradesync/server.db"


@dataclass
class SyncConfig:
    """Configuration for the server side of sync."""

    token: str | None = None  # shared secret checked against x-blob-token
    default_limit: int = 1000
    max_limit: int = 10000
    pushed_preserve_type: bool = False


@dataclass
class ClientConfig:
    """Configuration for an offline-capable sync client."""

    remote_url: str = ""
    client_id: str = "client"
    db_path: str = "~/.gradesync/client.db"
    batch_size: int = 100
    pull_limit: int = 1000
    max_pull_pages: int = 100
    retry_max_attempts: int = 3
    timeout_seconds: float = 30.0
    sync_interval_minutes: int = 5


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with GRADESYNC_ prefix."""
    return os.environ.get(f"GRADESYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if timeout := _get_env("REQUEST_TIMEOUT"):
        config.server.request_timeout_seconds = float(timeout)

    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Sync overrides
    if token := _get_env("SYNC_TOKEN"):
        config.sync.token = token
    if preserve := _get_env("SYNC_PUSHED_PRESERVE_TYPE"):
        config.sync.pushed_preserve_type = _is_true(preserve)

    # The blob token names are shared with the upload service deployment
    if not config.sync.token:
        config.sync.token = (
            os.environ.get("BLOB_READ_WRITE_TOKEN")
            or os.environ.get("VERCEL_BLOB_RW_TOKEN")
            or None
        )

    # Client overrides
    if remote_url := _get_env("CLIENT_REMOTE_URL"):
        config.client.remote_url = remote_url
    if client_id := _get_env("CLIENT_ID"):
        config.client.client_id = client_id
    if client_db := _get_env("CLIENT_DB_PATH"):
        config.client.db_path = client_db
    if interval := _get_env("CLIENT_SYNC_INTERVAL"):
        config.client.sync_interval_minutes = int(interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    request_timeout_seconds=server_data.get(
                        "request_timeout_seconds",
                        config.server.request_timeout_seconds,
                    ),
                )

            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    token=sync_data.get("token", config.sync.token),
                    default_limit=sync_data.get(
                        "default_limit", config.sync.default_limit
                    ),
                    max_limit=sync_data.get("max_limit", config.sync.max_limit),
                    pushed_preserve_type=sync_data.get(
                        "pushed_preserve_type", config.sync.pushed_preserve_type
                    ),
                )

            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    remote_url=client_data.get(
                        "remote_url", config.client.remote_url
                    ),
                    client_id=client_data.get("client_id", config.client.client_id),
                    db_path=client_data.get("db_path", config.client.db_path),
                    batch_size=client_data.get(
                        "batch_size", config.client.batch_size
                    ),
                    pull_limit=client_data.get(
                        "pull_limit", config.client.pull_limit
                    ),
                    max_pull_pages=client_data.get(
                        "max_pull_pages", config.client.max_pull_pages
                    ),
                    retry_max_attempts=client_data.get(
                        "retry_max_attempts", config.client.retry_max_attempts
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                    sync_interval_minutes=client_data.get(
                        "sync_interval_minutes",
                        config.client.sync_interval_minutes,
                    ),
                )

    return _apply_env_overrides(config)
