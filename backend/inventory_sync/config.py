"""Application configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.debug and self.log_level.upper() != "TRACE":
            self.log_level = "DEBUG"

    # Database (POS ledger + sync records)
    database_url: str = "sqlite:///./inventory_sync.db"

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Inventory service
    inventory_base_url: str = "http://localhost:8100"
    inventory_api_token: str = ""
    inventory_timeout_seconds: float = 30.0

    # Defaults written by initializeSettings
    default_sync_enabled: bool = True
    default_auto_update_on_sale: bool = True
    default_sync_interval_ms: int = 300000  # 5 minutes

    # Scheduler
    initial_sync_delay_seconds: int = 10
    retry_poll_seconds: int = 300

    # Retry policy
    max_retries: int = 5
    retry_base_delay_seconds: int = 300
    retry_max_delay_seconds: int = 7200

    # Stock mutations
    bulk_update_concurrency: int = 5
    pos_system_user: str = "pos_system"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


# Global settings instance
settings = Settings()
