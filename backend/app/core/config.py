from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Dunning Recovery Engine"
    DEBUG: bool = False
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/dunning.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Payment gateway
    PAYMENT_GATEWAY: str = "stripe"  # "stripe" or "manual"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    manual_webhook_secret: str = ""

    # Admin tokens (HS256 JWT with role=software_owner)
    ADMIN_JWT_SECRET: str = "change-me-admin-secret"

    # Notifier
    NOTIFIER_URL: str = ""  # empty = log only
    NOTIFIER_SECRET: str = ""
    NOTIFIER_TIMEOUT_SECONDS: float = 10.0

    # Dunning engine tuning
    PENDING_ATTEMPT_TIMEOUT_MINUTES: int = 60
    ACCOUNT_ACTION_MAX_RETRIES: int = 5
    COMMUNICATION_MAX_RETRIES: int = 3
    WEBHOOK_EVENT_RETENTION_HOURS: int = 72

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def version(self) -> str:
        return "0.1.0"


settings = Settings()
