import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate a bare comma/space separated list.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
        else:
            origins.append(f"http://{part}")
            origins.append(f"https://{part}")
    return list(dict.fromkeys(origins))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "coupons"
    db_password: str = "coupons"
    db_name: str = "coupon_system"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 10  # Seconds to wait for a pooled connection
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True

    # SQLite pool settings (file-based SQLite for local runs and tests)
    db_sqlite_pool_size: int = 10
    db_sqlite_max_overflow: int = 5

    # asyncpg per-command timeout in seconds
    db_command_timeout: float = 10.0

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Upper bound for a single store operation (fetch, commit, transition)
    store_timeout_seconds: float = 5.0

    # Validation log batching
    audit_batch_size: int = 100
    audit_flush_interval_seconds: float = 5.0
    audit_shutdown_timeout_seconds: float = 10.0
    audit_failure_alert_threshold: int = 3  # Consecutive failed flushes before CRITICAL

    # Coupon code generation
    user_code_prefix: str = "USER"
    promo_code_prefix: str = "PROMO"
    promo_code_length: int = 12
    default_created_by: str = "system"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Use NoDecode so a bare host list doesn't crash JSON parsing at startup.
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "db_pool_size",
        "db_max_overflow",
        "db_sqlite_pool_size",
        "db_sqlite_max_overflow",
    )
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool_size is positive."""
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    @field_validator(
        "store_timeout_seconds",
        "audit_flush_interval_seconds",
        "audit_shutdown_timeout_seconds",
        "db_command_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("audit_batch_size", "audit_failure_alert_threshold")
    @classmethod
    def validate_audit_counts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("audit batch size and alert threshold must be at least 1")
        return v

    @field_validator("promo_code_length")
    @classmethod
    def validate_code_length(cls, v: int) -> int:
        if not 4 <= v <= 40:
            raise ValueError("promo_code_length must be between 4 and 40")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
