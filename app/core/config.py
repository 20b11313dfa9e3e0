from typing import List, Union
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    # Application
    APP_NAME: str = "AidlY Analytics"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./aidly.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # CORS
    BACKEND_CORS_ORIGINS: List[Union[str, AnyHttpUrl]] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Cache ("memory://" keeps the cache in-process)
    REDIS_URL: str = "memory://"
    CACHE_DEFAULT_TTL_SECONDS: int = 300

    # Report output files
    STORAGE_TYPE: str = "local"  # local, s3
    EXPORT_STORAGE_PATH: str = "storage"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    S3_BUCKET_NAME: str = "aidly-report-exports"

    # Notification Settings
    NOTIFICATION_ENABLED: bool = True
    NOTIFICATION_MAX_RETRIES: int = 3
    NOTIFICATION_RETRY_DELAY_MINUTES: int = 5
    NOTIFICATION_PENDING_GRACE_MINUTES: int = 1
    NOTIFICATION_QUEUE_BATCH: int = 100
    NOTIFICATION_RETRY_BATCH: int = 50
    DIGEST_WINDOW_MINUTES: int = 5

    # Email/SMTP Settings
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_FROM_NAME: str = "AidlY Support"
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    SMTP_TIMEOUT: int = 30

    # Realtime relay (channel auth signing)
    REALTIME_APP_ID: str = "aidly"
    REALTIME_KEY: str = "aidly-key"
    REALTIME_SECRET: str = "change-me"
    REALTIME_HEARTBEAT_SECONDS: float = 30.0

    # Links in emails
    FRONTEND_BASE_URL: str = "http://localhost:3000"

    # Metrics aggregation
    AGGREGATION_MAX_ATTEMPTS: int = 3
    AGGREGATION_TIMEOUT_SECONDS: float = 180.0
    AGGREGATION_RETRY_DELAY_SECONDS: float = 10.0
    AGENT_METRICS_WINDOW_DAYS: int = 30
    CLIENT_METRICS_LIMIT: int = 100
    HOURLY_METRICS_TTL_SECONDS: int = 7200

    # Business hours for dashboard response/resolution times
    BUSINESS_DAYS: str = "1,2,3,4,5"  # ISO weekdays, Monday=1
    BUSINESS_HOURS_START: str = "09:00"
    BUSINESS_HOURS_END: str = "18:00"
    BUSINESS_TIMEZONE: str = "UTC"
    DASHBOARD_STATS_PERIOD_DAYS: int = 30

    # Reports
    REPORT_EXECUTION_RETENTION: int = 30
    SCHEDULE_FAILURE_THRESHOLD: int = 5
    SCHEDULE_RETRY_MINUTES: int = 60
    SCHEDULED_REPORT_BATCH_LIMIT: int = 10
    SCHEDULED_REPORT_INTERVAL_MINUTES: int = 15
    REPORT_JOB_TIMEOUT_SECONDS: float = 300.0
    EXECUTION_HISTORY_DAYS: int = 90
    EXECUTION_STATS_DAYS: int = 30

    # Background scheduler
    ENABLE_SCHEDULER: bool = True

    # Monitoring & Performance Settings
    SLOW_QUERY_THRESHOLD_MS: float = 100.0  # Log queries slower than this (milliseconds)
    SLOW_REQUEST_THRESHOLD_MS: float = 1000.0  # Log requests slower than this (milliseconds)
    ENABLE_STRUCTURED_LOGGING: bool = True  # Use JSON structured logging
    ENABLE_PROMETHEUS_METRICS: bool = True  # Enable Prometheus metrics collection

    @property
    def email_enabled(self) -> bool:
        """Check if email delivery is configured."""
        return bool(self.SMTP_HOST)

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
