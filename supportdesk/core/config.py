"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.3.0"

    # Database
    DATABASE_URL: str = "sqlite:///./supportdesk.db"

    # Trigger gateway (external scheduler calls POST /queue/process)
    QUEUE_SECRET: str = ""

    # Token Encryption (Fernet key for provider access tokens at rest)
    TOKEN_ENCRYPTION_KEY: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Worker / dispatcher
    WORKER_BATCH_SIZE: int = 10
    WORKER_MAX_BATCH: int = 50  # Upper bound for ?max_batch overrides
    WORKER_POLL_INTERVAL: int = 30  # Only used by the supervised worker loop
    JOB_LEASE_SECONDS: int = 300
    JOB_TIMEOUT_SECONDS: int = 120
    JOB_BACKOFF_BASE_SECONDS: int = 30
    JOB_BACKOFF_MAX_SECONDS: int = 3600
    RATE_LIMIT_RETRY_SECONDS: int = 900
    RATE_LIMIT_STOP_AFTER: int = 2  # Consecutive rate limits before the batch stops
    RECURRING_JOB_TYPES: str = "mail_fetch,return_sync,call_sync"

    # IMAP (mail ingestion)
    IMAP_HOST: str = ""
    IMAP_PORT: int = 993
    IMAP_USER: str = ""
    IMAP_PASSWORD: str = ""
    IMAP_TLS: bool = True
    IMAP_FOLDER: str = "INBOX"
    MAIL_FETCH_LIMIT: int = 50

    # SMTP (customer notifications)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_USE_SSL: bool = False
    NOTIFY_CUSTOMERS_ON_RETURN: bool = False

    # iKAS commerce provider (client-credentials OAuth)
    IKAS_CLIENT_ID: str = ""
    IKAS_CLIENT_SECRET: str = ""
    IKAS_STORE_NAME: str = ""
    IKAS_API_URL: str = "https://api.myikas.com/api/v1/admin"
    RETURN_SYNC_LOOKBACK_DAYS: int = 90
    RETURN_SYNC_PAGE_SIZE: int = 100

    # AI completion
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Verimor telephony (CDR)
    VERIMOR_API_KEY: str = ""
    VERIMOR_BASE_URL: str = "https://api.bulutsantralim.com/api"
    CALL_SYNC_WINDOW_DAYS: int = 30
    CALL_SYNC_OVERLAP_MINUTES: int = 60

    @property
    def recurring_job_types_list(self) -> list[str]:
        """Parse RECURRING_JOB_TYPES into a list."""
        return [t.strip() for t in self.RECURRING_JOB_TYPES.split(",") if t.strip()]


settings = Settings()
