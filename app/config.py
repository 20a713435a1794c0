from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./abnormal_finding.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # App Settings
    APP_NAME: str = "Abnormal Finding Workflow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Sender email (defaults to SMTP_USER)
    SMTP_FROM_NAME: str = "Abnormal Finding System"

    # LINE Messaging API
    LINE_CHANNEL_ACCESS_TOKEN: str = ""
    LINE_API_BASE: str = "https://api.line.me/v2/bot/message"
    LINE_MAX_REQUESTS_PER_SECOND: float = 2.0

    # Frontend URL for links in notifications
    FRONTEND_URL: str = "http://localhost:3000"

    # Outbound call limits (seconds)
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    WORK_ORDER_SYNC_TIMEOUT_SECONDS: float = 5.0
    JOB_DRAIN_TIMEOUT_SECONDS: float = 10.0

    # Ticket numbering: {PREFIX}{YY}-{00001}
    TICKET_NUMBER_PREFIX: str = "AB"

    # Pending ticket reminder job
    PENDING_REMINDER_ENABLED: bool = True
    PENDING_REMINDER_HOUR: int = 8
    SCHEDULER_TIMEZONE: str = "Asia/Bangkok"

    # Due-date reminder job (assignees, due within N days or overdue)
    DUE_DATE_REMINDER_ENABLED: bool = True
    DUE_DATE_REMINDER_HOUR: int = 9
    DUE_DATE_WINDOW_DAYS: int = 3

    # Old open ticket reminder job (L2/L3 approvers, open longer than N hours)
    OLD_OPEN_REMINDER_ENABLED: bool = True
    OLD_OPEN_REMINDER_HOUR: int = 9
    OLD_OPEN_TICKET_HOURS: int = 24

    # Cedar CMMS work order creation
    WORK_ORDER_CODE_PREFIX: str = "WO"
    WORK_ORDER_SYSTEM_USER: Optional[int] = None

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
