"""
Application Configuration
=========================
Centralized configuration management using Pydantic Settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CODEX_METER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Collector selection
    collector_mode: Literal["tailer", "proxy"] = "tailer"

    # HTTP listener (management API, and the proxy in proxy mode)
    listen_host: str = "127.0.0.1"
    listen_port: int = 8787

    # Proxy
    upstream_base_url: str = "https://api.openai.com/v1"
    public_base_path: str = "/v1"
    upstream_timeout_seconds: float = 600.0
    capture_limit_bytes: int = Field(default=4 * 1024 * 1024, gt=0)
    max_request_body_bytes: int = Field(default=16 * 1024 * 1024, gt=0)

    # Log tailer
    log_directory: Path = Path("~/.codex/sessions")
    log_file_pattern: str = "*.jsonl"
    poll_interval_seconds: float = Field(default=1.0, gt=0)

    # Storage
    database_path: Path = Path("usage.db")

    # Aggregation
    flush_interval_seconds: float = Field(default=5.0, ge=0)
    recent_events_capacity: int = Field(default=500, ge=1)
    channel_capacity: int = Field(default=1024, ge=1)
    shutdown_send_timeout_seconds: float = Field(default=2.0, gt=0)

    # Pricing seed config path
    pricing_config_path: Path = Path("config/pricing.yaml")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "console"
    log_file: Path | None = None

    # Metrics
    metrics_enabled: bool = True

    # Scheduler
    scheduler_enabled: bool = True
    drift_check_hour: int = Field(default=3, ge=0, le=23)

    @property
    def database_url(self) -> str:
        """Return the async SQLAlchemy URL for the embedded database."""
        return f"sqlite+aiosqlite:///{self.database_path.expanduser()}"

    @property
    def resolved_log_directory(self) -> Path:
        return self.log_directory.expanduser()

    @property
    def batched_flush(self) -> bool:
        return self.flush_interval_seconds > 0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
