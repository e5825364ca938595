from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Tour Settlement API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    # Shared with the auth service that issues guide/ops JWTs
    SECRET_KEY: str

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_TIMEZONE: str = "UTC"

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "settlement@tours.local"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""

    # Comma-separated recipients for transfer/payout failure alerts. Empty disables alert mail.
    OPS_ALERT_EMAILS: str = ""

    # Stripe (separate charges & transfers)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_TIMEOUT_SECONDS: int = 20

    # Bearer secrets for the cron-style HTTP triggers. Empty = trigger refuses to run.
    CRON_SECRET: str = ""
    PAYOUT_PROCESSING_TOKEN: str = ""

    TRANSFER_BATCH_LIMIT: int = 100
    # A 'processing' claim older than this is considered abandoned and may be re-claimed
    TRANSFER_CLAIM_TTL_MINUTES: int = 15

    @property
    def ops_alert_recipients(self) -> list[str]:
        return [e.strip() for e in self.OPS_ALERT_EMAILS.split(",") if e.strip()]


settings = Settings()
