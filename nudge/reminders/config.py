from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ReminderSettings(BaseSettings):
    # Notification windows (minutes before the trigger instant)
    DAY_AHEAD_LEAD_MINUTES: int = 24 * 60
    NEAR_LEAD_MINUTES: int = 3 * 60
    LEAD_TOLERANCE_MINUTES: int = 3
    EXACT_TOLERANCE_MINUTES: int = 0

    # Retry policy
    MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_SECONDS: int = 60

    # Scheduling
    SCHEDULER_SCAN_INTERVAL_SECONDS: int = 60
    SCHEDULER_BATCH_SIZE: int = 200
    RUN_TIME_BUDGET_SECONDS: int = 50
    CLAIM_TIMEOUT_MINUTES: int = 15
    CHANNEL_SEND_WORKERS: int = 3

    # Reconciliation sweep
    RECONCILE_INTERVAL_SECONDS: int = 900
    RECONCILE_LOOKBACK_HOURS: int = 24

    # Routine materialisation
    ROUTINE_LOOKAHEAD_HOURS: int = 48
    ROUTINE_GENERATION_INTERVAL_SECONDS: int = 3600
    RECURRENCE_MAX_OCCURRENCES: int = 500

    # Celery configuration
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: Optional[str] = None
    WORKER_CONCURRENCY: int = 4

    # Web push (VAPID)
    VAPID_PUBLIC_KEY: Optional[str] = None
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_SUBJECT: str = "mailto:admin@example.com"
    PUSH_TIMEOUT_SECONDS: int = 10

    # Email (SMTP)
    SMTP_SERVER: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    FROM_EMAIL: Optional[str] = None
    SMTP_TIMEOUT_SECONDS: int = 15

    # SMS (Telnyx)
    TELNYX_API_KEY: Optional[str] = None
    TELNYX_FROM_NUMBER: Optional[str] = None

    # Sync trigger client
    SERVICE_URL: Optional[str] = None
    SERVICE_API_KEY: Optional[str] = None

    # Metrics
    METRICS_ENABLED: bool = False

    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")


settings = ReminderSettings()
