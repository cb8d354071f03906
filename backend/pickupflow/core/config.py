"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False

    # Storage
    db_path: str = "./data/pickupflow.db"
    upload_dir: str = "./uploads"
    max_upload_size: int = 20971520  # 20MB
    idempotency_retention: int = 10000

    # Tenancy / actors
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""
    # `actor_id:Display Name` comma-separated pairs for the static identity provider
    actor_directory: str = ""

    # Query surface
    default_page_size: int = 25
    max_page_size: int = 200

    # Change feed
    change_feed_backlog: int = 500

    def clamp_page_size(self, page_size: int | None) -> int:
        if not page_size or page_size < 1:
            return self.default_page_size
        return min(int(page_size), self.max_page_size)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
