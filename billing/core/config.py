"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Connection URLs have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    cors_origins: str = ""

    # ===========================================
    # DATABASE
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # PAYMENT PROVIDER (Razorpay)
    # ===========================================
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    provider_timeout_seconds: float = 30.0

    # ===========================================
    # REFUNDS
    # ===========================================
    refund_lock_backend: str = "local"  # local, redis
    refund_lock_timeout_seconds: int = 60
    # a PENDING refund the provider has never heard of is failed by the sync after this long
    refund_pending_stale_minutes: int = 30
    refund_monthly_chart_months: int = 12

    # ===========================================
    # SUBSCRIPTION LIFECYCLE
    # ===========================================
    grace_period_hours: int = 72
    # Comma-separated days-before-expiry thresholds for warning notifications
    expiry_warning_days: str = "3,1"

    # ===========================================
    # SCHEDULER
    # ===========================================
    scheduler_enabled: bool = True
    scheduler_max_workers: int = 2
    scheduler_initial_delay_seconds: int = 60
    scheduler_shutdown_timeout_seconds: int = 30
    subscription_expiry_check_interval_minutes: int = 720  # 12 hours
    grace_period_check_interval_hours: int = 24
    notification_check_interval_hours: int = 24
    # Notification check starts later than the other two tasks
    notification_check_offset_seconds: int = 300

    # ===========================================
    # NOTIFICATIONS
    # ===========================================
    notification_api_url: str = ""
    notification_api_key: str | None = None
    notification_timeout_seconds: float = 10.0

    # ===========================================
    # FINANCIAL REPORTING
    # ===========================================
    export_max_records: int = 10_000
    metrics_cache_ttl_seconds: int = 60

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator(
        "grace_period_hours",
        "scheduler_max_workers",
        "subscription_expiry_check_interval_minutes",
        "grace_period_check_interval_hours",
        "notification_check_interval_hours",
        "export_max_records",
        "refund_monthly_chart_months",
        "refund_pending_stale_minutes",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("expiry_warning_days")
    @classmethod
    def validate_warning_days(cls, v: str) -> str:
        """Validate thresholds format."""
        for part in v.split(","):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit() or int(part) <= 0:
                raise ValueError("expiry_warning_days must be comma-separated positive integers")
        return v.strip()

    @field_validator("refund_lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("local", "redis"):
            raise ValueError("refund_lock_backend must be 'local' or 'redis'")
        return v

    @field_validator("cb_storage")
    @classmethod
    def validate_cb_storage(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("redis", "memory"):
            raise ValueError("cb_storage must be 'redis' or 'memory'")
        return v

    @property
    def expiry_warning_days_list(self) -> list[int]:
        """Warning thresholds, largest first."""
        days = {int(d.strip()) for d in self.expiry_warning_days.split(",") if d.strip()}
        return sorted(days, reverse=True)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
