from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    DEBUG: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/billing_lifecycle.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Subscription lifecycle policy
    LIFECYCLE_GRACE_PERIOD_DAYS: int = 7
    LIFECYCLE_RETRY_INTERVALS: list[int] = [1, 3, 5]  # days between payment retries
    LIFECYCLE_TRIAL_CONVERSION_DAYS: int = 0  # 0 = convert as soon as the trial ends
    # None cancels past_due -> unpaid -> canceled in one run; a number keeps
    # the subscription unpaid for that many days before canceling it.
    LIFECYCLE_UNPAID_RETENTION_DAYS: int | None = None

    # Payment processing
    PAYMENT_PROCESSOR: str = ""  # dotted path, e.g. "myproject.payments:charge"
    PAYMENT_TIMEOUT_MS: int = 30000
    PAYMENT_CIRCUIT_FAILURE_THRESHOLD: int = 3
    PAYMENT_CIRCUIT_SUCCESS_THRESHOLD: int = 2
    PAYMENT_CIRCUIT_RESET_TIMEOUT_MS: int = 60000
    PAYMENT_MAX_RETRIES: int = 3
    PAYMENT_RETRY_INITIAL_DELAY_MS: int = 2000
    PAYMENT_RETRY_MAX_DELAY_MS: int = 30000
    PAYMENT_MAX_CONCURRENT: int = 10
    PAYMENT_MAX_QUEUE_SIZE: int = 100

    # Lifecycle event delivery
    lifecycle_webhook_url: str = ""  # empty disables webhook delivery
    webhook_secret: str = "whsec_default_secret"
    webhook_timeout_seconds: float = 10.0


settings = Settings()
