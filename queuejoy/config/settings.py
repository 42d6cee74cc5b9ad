"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Realtime Database (tenant namespaces live under tenants/{slug})
    firebase_db_url: str = ""
    firebase_auth_token: str = ""
    firebase_timeout_seconds: float = 10.0

    # Shared ticket cache (MongoDB) or local fallback file
    ticket_store_backend: str = "file"  # "mongo" | "file"
    ticket_store_path: str = "/tmp/queuejoy_store.json"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "queuejoy"
    ticket_cache_collection: str = "ticket_cache"
    ticket_cache_ttl_days: int = 7

    # Telegram
    bot_token: str = ""
    bot_username: str = "QueueJoyBot"
    telegram_api_base: str = "https://api.telegram.org"
    telegram_webhook_secret: str = ""
    telegram_max_attempts: int = 3
    telegram_backoff_base_ms: int = 150
    telegram_timeout_seconds: float = 8.0
    broadcast_pause_ms: int = 90

    # Admin
    master_api_key: str = ""
    announce_requires_master_key: bool = False
    admin_chat_id: str = ""  # relay fallback and copyAdmin recipient

    # Public URLs
    site_base: str = "https://queuejoy.netlify.app"
    explore_url: str = "https://helloqueuejoy.netlify.app"

    # Queue behaviour
    token_ttl_hours: int = 24
    stale_ticket_hours: int = 24
    moving_avg_window: int = 10
    ticket_number_padding: int = 3

    # Client config delivery (env endpoint)
    tenant_id: str = ""
    firebase_path: str = ""
    firebase_client_config: str = ""

    # Provisioning: template scaffolding into a source repo + static site
    enable_repo_deploy: bool = False
    github_token: str = ""
    github_owner: str = ""
    github_repo: str = ""
    github_branch: str = "main"
    template_path_in_repo: str = "template"
    enable_netlify_create: bool = False
    netlify_auth_token: str = ""

    # Housekeeping scheduler
    housekeeping_enabled: bool = False
    housekeeping_interval_minutes: int = 60

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def database_url(self) -> str:
        """Realtime DB root without trailing slash"""
        return self.firebase_db_url.rstrip("/")

    @property
    def token_ttl_ms(self) -> int:
        return self.token_ttl_hours * 60 * 60 * 1000

    @property
    def stale_ticket_ms(self) -> int:
        return self.stale_ticket_hours * 60 * 60 * 1000

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
