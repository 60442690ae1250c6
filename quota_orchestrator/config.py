from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Quota-Aware Call Orchestrator"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database (durable counter/session store)
    DATABASE_URL: str = "sqlite:///./orchestrator.db"

    # JWT Authentication
    SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # API
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
    ]

    # Rate Limiting & Quota Management
    RATE_LIMIT_ENABLED: bool = True
    REDIS_URL: str | None = None
    RATE_LIMIT_POLICIES: str | None = None  # JSON: {"apollo": {"daily": .., "hourly": .., "per_minute": ..}}
    MINUTE_BUCKETS_RETAINED: int = 60
    HOUR_BUCKETS_RETAINED: int = 24

    # Fallback selection
    FALLBACK_PROBE_TIMEOUT_SEC: float = 5.0

    # Mining sessions
    SESSION_RETENTION_DAYS: int = 7
    SESSION_STALE_AFTER_MINUTES: int = 30
    SESSION_SWEEP_INTERVAL_SEC: int = 300  # 0 disables the background sweep

    # Tracing
    TRACING_ENABLED: bool = True
    TRACING_EXPORTER: str = "none"  # console|none
    TRACING_SERVICE_NAME: str = "quota-orchestrator"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra environment variables


settings = Settings()
