from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "billing-engine"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/billing_engine.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Provider webhooks
    webhook_provider: str = "hmac"  # "hmac" or "stripe"
    billing_webhook_secret: str = ""
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Notification sink ("invoice ready to deliver")
    notification_webhook_url: str = ""
    notification_webhook_secret: str = "whsec_default_secret"

    # Client directory
    client_directory_url: str = ""
    client_directory_cache_seconds: int = 300

    # Recurring scheduler
    SCHEDULER_LEASE_SECONDS: int = 120
    SCHEDULER_BATCH_SIZE: int = 500

    # Retry of transient storage errors (scheduler and reconciler only)
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_BACKOFF_SECONDS: float = 0.2
    STORAGE_RETRY_BACKOFF_MAX_SECONDS: float = 2.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def sqlite(self) -> bool:
        return self.APP_DATABASE_DSN.startswith("sqlite")


settings = Settings()
