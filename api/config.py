"""
Portfolio Analytics — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./analytics.db",
        description="Async SQLAlchemy DB URL",
    )
    # Postgres pool tuning (ignored for SQLite)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_recycle_seconds: int = Field(
        default=300, description="Recycle pooled connections to avoid stale FDs"
    )

    # Dashboard
    analytics_password: str = Field(
        default="change-me-in-production",
        description="Shared secret expected in ?password= on the stats endpoint",
    )
    recent_visits_limit: int = Field(default=10)

    # Environment / CORS
    environment: str = Field(
        default="production",
        description="'development' opens CORS to localhost + LAN origins",
    )
    cors_origins: list[str] = Field(
        default=[
            "https://portfolio.jan-huelsbrink.de",
            "https://app.jan-huelsbrink.de",
        ],
        description="Allowed origins in production",
    )

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    # Sessions
    session_timeout_minutes: int = Field(
        default=30, description="Sliding-window session timeout"
    )

    # Retention
    raw_retention_days: int = Field(default=14)
    aggregate_retention_days: int = Field(default=30)
    basic_page_view_retention_days: int = Field(default=365)
    retention_hour_utc: int = Field(
        default=2, ge=0, le=23, description="Hour (UTC) the nightly cleanup fires"
    )
    retention_retry_seconds: int = Field(
        default=3600, description="Back-off after a failed cleanup cycle"
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
