"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Subject account whose follows are bulk-synced
    subject_did: Optional[str] = None

    # Remote endpoints
    pds_url: Optional[str] = None
    relay_url: str = "https://bsky.network"
    public_api_url: str = "https://public.api.bsky.app"

    # Cache settings
    cache_db_path: Path = Path("./data/relsync.db")
    cache_ttl_seconds: int = 24 * 60 * 60
    allow_stale_if_preferred: bool = True
    # Per-kind TTL overrides, e.g. {"blocks": 3600}; other kinds use cache_ttl_seconds
    kind_ttl_seconds: Dict[str, int] = {}
    max_cache_bytes: int = 8 * 1024 * 1024
    storage_write_retries: int = 1

    # Check the remote revision before trusting the TTL
    revision_check_first: bool = False

    # Remote call budgets
    fetch_timeout_seconds: float = 120.0
    revision_timeout_seconds: float = 10.0
    max_payload_bytes: int = 256 * 1024 * 1024

    # Request coalescing
    coalescer_workers: int = 8

    # Background queue
    queue_max_retries: int = 3
    queue_request_delay_ms: int = 500
    queue_backoff_base_ms: int = 1000
    queue_drain_batch_size: int = 5
    queue_drain_interval_seconds: float = 60.0
    queue_worker_enabled: bool = True

    # Bulk synchronization
    bulk_max_concurrency: int = 5
    bulk_batch_delay_ms: int = 500
    bulk_max_pages: int = 100

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "RELSYNC_"


settings = Settings()
