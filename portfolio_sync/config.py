"""
Application configuration management.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # GitHub
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    github_api_version: str = "2022-11-28"
    default_branch: str = "main"

    # Redis (save snapshot persistence)
    redis_url: str = "redis://localhost:6379/0"
    snapshot_ttl_seconds: int = 7 * 24 * 3600

    # Request gate / retry policy
    request_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    rate_limit_max_wait_seconds: float = 300.0
    rate_limit_max_queue_size: int = 100
    secondary_rate_limit_default_wait_seconds: float = 60.0

    # Commit pipeline
    max_file_size_bytes: int = 100 * 1024 * 1024
    create_backup_refs: bool = False
    commit_author_name: Optional[str] = None
    commit_author_email: Optional[str] = None

    # Autosave
    autosave_debounce_seconds: float = 2.0
    autosave_retry_delay_seconds: float = 1.0
    conflict_check_interval_seconds: float = 30.0
    enable_conflict_detection: bool = True
    portfolio_data_path: str = "data.json"
    autosave_commit_message: str = "Update portfolio content"

    # Application
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
