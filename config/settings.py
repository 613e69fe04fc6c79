"""Configuration management using pydantic-settings."""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables."""

    # Worker generation
    sw_version: str = "v1.0.0"
    cache_prefix: str = "hockey-hub"

    # Storage
    cache_db_path: Path = Path("./data/cache.db")
    queue_database_url: str = "sqlite:///./data/sync_queue.db"

    # Upstream backend the gateway forwards page requests to
    upstream_base_url: str = "http://localhost:3000"

    # Network attempts slower than this fall back to cache
    network_timeout_seconds: float = 10.0

    # Background refresh
    max_revalidation_workers: int = 4

    # Drop entries older than their category max age during pruning
    enforce_max_age: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
