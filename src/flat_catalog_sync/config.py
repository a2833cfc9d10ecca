"""Configuration models for flat-catalog-sync."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

SyncModeName = Literal["traditional", "basic", "optimized"]


class ServerConfig(BaseModel):
    """Configuration for a single file server."""

    id: str
    base_url: str
    priority: int = 100  # Lower number wins field arbitration
    timeout: float = 10.0  # Data call timeout in seconds
    enabled: bool = True
    movies_path: str = "/api/movies"
    tv_path: str = "/api/tv"
    webhook_id: str | None = None  # Sent as x-webhook-id
    max_fetch_retries: int = 3
    force_sync_mode: SyncModeName | None = None  # Skip capability detection

    @field_validator("id", "base_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @property
    def url(self) -> str:
        """Base URL without trailing slash."""
        return self.base_url.rstrip("/")


class SyncConfig(BaseModel):
    """Sync behavior configuration."""

    episode_concurrency: int = 120
    hash_concurrency: int = 20
    entity_concurrency: int = 20  # Movies, shows and seasons
    probe_timeout: float = 2.0
    bulk_timeout: float = 60.0
    batch_delay_seconds: float = 0.05
    interval_seconds: float = 3600.0  # 0 disables the scheduled worker
    run_on_startup: bool = True
    expected_tree_version: str | None = None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/flat-catalog.db"
    journal_mode: str = "WAL"  # WAL, DELETE, TRUNCATE, MEMORY, OFF


class CacheConfig(BaseModel):
    """Downstream cache invalidation configuration."""

    redis_url: str | None = None  # No invalidation when unset
    scan_count: int = 500


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class Config(BaseModel):
    """Root configuration model."""

    servers: list[ServerConfig] = Field(default_factory=list)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    def get_server(self, server_id: str) -> ServerConfig | None:
        """Get server config by id."""
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def enabled_servers(self) -> list[ServerConfig]:
        """Enabled servers, highest priority first (ties keep config order)."""
        return sorted((s for s in self.servers if s.enabled), key=lambda s: s.priority)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(path: str | Path) -> Config:
    """Load configuration from file and set as global."""
    global _config
    _config = Config.from_yaml(path)
    return _config
