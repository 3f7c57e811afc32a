"""
Pydantic Settings — centralized configuration loaded from environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ──────────────────────────────
    POSTGRES_USER: str = "policies_user"
    POSTGRES_PASSWORD: str = "policies_pass"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "policies_db"

    # Full async URL, bypasses the POSTGRES_* parts (e.g. sqlite+aiosqlite for tests)
    DATABASE_URL_OVERRIDE: str = ""

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for app runtime (asyncpg)."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def DATABASE_URL_SYNC(self) -> str:
        """Sync URL for Alembic migrations (psycopg2)."""
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # ── Redis / Celery ────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # ── Application ───────────────────────────
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None  # None: console in development, JSON elsewhere

    # ── Expiry tracking ───────────────────────
    EXPIRY_SOON_DAYS: int = Field(default=30, ge=1)
    EXPIRY_CRITICAL_DAYS: int = Field(default=7, ge=0)
    EXPIRY_INFO_DAYS: int = Field(default=60, ge=1)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = Field(default=3600, ge=60)

    # ── Legacy → template migration ───────────
    # Phase defaults live in app.compat.config; every override below is
    # optional and only wins when explicitly set.
    POLICY_MIGRATION_PHASE: str = "migration"
    USE_TEMPLATE_SYSTEM: bool | None = None
    ALLOW_FALLBACK: bool | None = None
    MIGRATE_ON_READ: bool | None = None
    MIGRATION_BATCH_SIZE: int | None = Field(default=None, ge=1, le=10000)
    ENABLE_AUTO_MIGRATION: bool | None = None
    ENABLE_ROLLBACK: bool | None = None
    BACKUP_RETENTION_DAYS: int | None = Field(default=None, ge=0)
    STRICT_MODE: bool | None = None
    ALLOW_DUPLICATES: bool | None = None
    VALIDATE_DATES: bool | None = None
    VALIDATE_AMOUNTS: bool | None = None

    MIGRATION_BATCH_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    MIGRATION_BATCH_MAX_ATTEMPTS: int = Field(default=3, ge=1)

    model_config = {"env_file": ["../.env", ".env"], "extra": "ignore"}


settings = Settings()
