"""Configuration management for Merkle Sync."""

import json
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from . import CONFIG_FILE, STATE_DIR

DAY_SECONDS = 24 * 60 * 60


class ClientConfig(BaseModel):
    """Configuration for the watching/syncing side of a project."""

    version: int = 1
    server_url: str = "http://127.0.0.1:8787"
    auth_token: str | None = None
    extensions: list[str] = Field(
        default=[".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java", ".c", ".cpp", ".h"]
    )
    ignore_patterns: list[str] = Field(
        default=[
            "**/node_modules/**",
            "**/.git/**",
            "**/dist/**",
            "**/build/**",
            "**/__pycache__/**",
            "**/.venv/**",
            f"**/{STATE_DIR}/**",
            "*.log",
        ]
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    sync_interval_seconds: float = Field(default=300.0, ge=1)


class ServerSettings(BaseModel):
    """Configuration for the remote index."""

    host: str = "127.0.0.1"
    port: int = Field(default=8787, ge=1, le=65535)
    store: Literal["memory", "lance"] = "memory"
    store_path: str = f"./{STATE_DIR}-server"
    token_prefix: str = "dev-token-"
    verify_hashes: bool = True

    # Fragment-hash existence entries follow project churn; processed
    # payloads are costlier to recompute and never go stale.
    chunk_hash_ttl_seconds: int = Field(default=30 * DAY_SECONDS, ge=60)
    payload_ttl_seconds: int = Field(default=90 * DAY_SECONDS, ge=60)

    lookup_timeout_seconds: float = Field(default=5.0, gt=0)
    put_attempts: int = Field(default=3, ge=1)
    store_compact_every: int = Field(default=100, ge=1)

    # AI backend calls must finish well inside the platform's request ceiling
    ai_timeout_seconds: float = Field(default=25.0, gt=0)
    summary_batch_size: int = Field(default=50, ge=1)
    embedding_batch_size: int = Field(default=100, ge=1)
    embedding_provider: Literal["local", "none"] = "local"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dimensions: int = Field(default=384, ge=1)


def get_state_dir(project_root: Path) -> Path:
    """Get the .merkle-sync directory path."""
    return project_root / STATE_DIR


def get_config_path(project_root: Path) -> Path:
    """Get the config file path."""
    return get_state_dir(project_root) / CONFIG_FILE


def load_config(project_root: Path) -> ClientConfig:
    """Load configuration from the project's config file.

    Falls back to defaults if file doesn't exist.
    Environment variables can override config values.
    """
    config_path = get_config_path(project_root)

    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        config = ClientConfig.model_validate(data)
    else:
        config = ClientConfig()

    return _apply_env_overrides(config)


def save_config(config: ClientConfig, project_root: Path) -> None:
    """Save configuration to the project's config file."""
    config_path = get_config_path(project_root)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    # Tokens come from the environment, never from a file in the project tree
    data = config.model_dump(exclude={"auth_token"})
    with open(config_path, "w") as f:
        json.dump(data, f, indent=2)


def _apply_env_overrides(config: ClientConfig) -> ClientConfig:
    """Apply environment variable overrides to config."""
    data = config.model_dump()

    # MERKLE_SYNC_SERVER_URL
    if url := os.environ.get("MERKLE_SYNC_SERVER_URL"):
        data["server_url"] = url

    # MERKLE_SYNC_TOKEN
    if token := os.environ.get("MERKLE_SYNC_TOKEN"):
        data["auth_token"] = token

    return ClientConfig.model_validate(data)


# Environment variable -> ServerSettings field
_SERVER_ENV = {
    "MERKLE_SYNC_HOST": "host",
    "MERKLE_SYNC_PORT": "port",
    "MERKLE_SYNC_STORE": "store",
    "MERKLE_SYNC_STORE_PATH": "store_path",
    "MERKLE_SYNC_STORE_COMPACT_EVERY": "store_compact_every",
    "MERKLE_SYNC_TOKEN_PREFIX": "token_prefix",
    "MERKLE_SYNC_VERIFY_HASHES": "verify_hashes",
    "MERKLE_SYNC_CHUNK_HASH_TTL": "chunk_hash_ttl_seconds",
    "MERKLE_SYNC_PAYLOAD_TTL": "payload_ttl_seconds",
    "MERKLE_SYNC_AI_TIMEOUT": "ai_timeout_seconds",
    "MERKLE_SYNC_EMBEDDING_PROVIDER": "embedding_provider",
    "MERKLE_SYNC_EMBEDDING_MODEL": "embedding_model",
}


def load_server_settings(**overrides) -> ServerSettings:
    """Build server settings from defaults, MERKLE_SYNC_* variables, then overrides."""
    data: dict = {}
    for env_name, field_name in _SERVER_ENV.items():
        if (value := os.environ.get(env_name)) is not None:
            data[field_name] = value
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ServerSettings.model_validate(data)
