"""Configuration management."""

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "turnguard"
    db_user: str = "turnguard"
    db_password: str = ""
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # "memory" keeps everything in-process (tests, local dev)
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Integrity policy
    grace_window_seconds: int = 120  # Unanswered tool calls are pending this long
    checkpoint_interval: int = 10  # Minimum active-turn delta between automatic checkpoints
    checkpoint_retention: int = 20  # Checkpoints kept per conversation
    checkpoint_max_age_days: int = 7
    snapshot_tail_size: int = 50  # Turns serialized into each checkpoint
    recovery_ttl_seconds: int = 3600
    restore_mode: Literal["archive", "delete"] = "archive"
    repair_strategy: Literal["abandon", "truncate"] = "abandon"

    # Sweeper
    sweep_enabled: bool = True
    sweep_cron: str = "*/5 * * * *"
    health_alert_threshold: float = 95.0

    # HTTP error boundary
    conversation_error_middleware: bool = True
    debug_conversation_errors: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
