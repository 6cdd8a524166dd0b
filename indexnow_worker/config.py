"""Configuration settings for the IndexNow job worker."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_user: Optional[str] = None
    redis_db: int = 0
    redis_url: str = ""  # Overrides host/port/password when set
    queue_prefix: str = "indexnow"

    # Feature gate
    enable_job_queue: bool = False
    worker_mode: Literal["inline", "none", "all"] = "inline"

    # Per-queue tuning
    concurrency_rank_check: int = 5
    rate_limit_rank_check_max: int = 28
    rate_limit_rank_check_duration_ms: int = 60000
    concurrency_email: int = 10
    rate_limit_email_max: int = 50
    rate_limit_email_duration_ms: int = 60000
    concurrency_payments: int = 3

    # Worker loop
    worker_poll_interval_seconds: float = 1.0
    worker_stalled_after_seconds: int = 300
    scheduler_timezone: str = "UTC"

    # Scheduled sweeps
    auto_cancel_batch_size: int = 500
    auto_cancel_expiry_hours: int = 24
    sweep_lock_ttl_seconds: int = 3300  # Just under the hourly cadence
    keyword_enrichment_batch_size: int = 50
    daily_rank_check_batch_size: int = 500

    # External calls
    external_call_timeout_seconds: float = 60.0

    # Database (Supabase PostgREST)
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: str = ""

    # Rank tracking
    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev"

    # Keyword enrichment
    seranking_base_url: str = "https://api.seranking.com"

    # Email
    email_provider: Literal["smtp", "mock"] = "mock"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "IndexNow Studio <noreply@indexnow.studio>"
    public_base_url: str = "http://localhost:3000"

    # Server
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"
    service_token: str = ""  # Bearer token for the queue admin endpoints
    cors_origins: str = "http://localhost:3000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def resolved_redis_url(self) -> str:
        """Redis URL built from host/port/credentials unless REDIS_URL is given."""
        if self.redis_url:
            return self.redis_url
        auth = ""
        if self.redis_password:
            auth = f"{self.redis_user or ''}:{self.redis_password}@"
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear settings cache (for testing)."""
    get_settings.cache_clear()
