"""
Application settings using Pydantic.

Provides environment-based configuration loading with WARDEN_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WARDEN_",
    )

    # Database
    database_url: str = "postgresql+psycopg://localhost/warden"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    # Environment
    environment: str = "development"

    # Actors
    system_actor_name: str = "system"
    default_account_type: str = "user"

    # Bulk revocation: provider calls allowed per interval, shared by all workers
    revoke_batch_size: int = 10
    revoke_interval_seconds: float = 1.0
    revoke_max_workers: int = 16

    # Expired grants job
    expired_grant_revoke_reason: str = "Automatically revoked"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
