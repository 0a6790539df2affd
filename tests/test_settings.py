import pytest
from pydantic import ValidationError

from coupons.app.core.config import Settings


def test_cors_origins_accepts_host_without_json(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "43.163.94.63")

    settings = Settings(_env_file=None)
    assert "http://43.163.94.63" in settings.cors_origins
    assert "https://43.163.94.63" in settings.cors_origins


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("http://a.example, http://b.example", ["http://a.example", "http://b.example"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
    ],
)
def test_cors_origins_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    settings = Settings(_env_file=None)
    assert settings.cors_origins == expected


def test_database_url_override(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:////tmp/coupons.db")

    settings = Settings(_env_file=None)
    assert settings.database_url == "sqlite+aiosqlite:////tmp/coupons.db"


def test_database_url_built_from_parts(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_HOST", "db.internal")
    monkeypatch.setenv("DB_NAME", "grants")

    settings = Settings(_env_file=None)
    assert settings.database_url.startswith("postgresql+asyncpg://")
    assert settings.database_url.endswith("@db.internal:5432/grants")


@pytest.mark.parametrize(
    ("env", "value"),
    [
        ("AUDIT_BATCH_SIZE", "0"),
        ("AUDIT_FAILURE_ALERT_THRESHOLD", "0"),
        ("AUDIT_FLUSH_INTERVAL_SECONDS", "0"),
        ("STORE_TIMEOUT_SECONDS", "-1"),
        ("DB_POOL_SIZE", "0"),
        ("PROMO_CODE_LENGTH", "2"),
    ],
)
def test_invalid_values_rejected(monkeypatch, env: str, value: str) -> None:
    monkeypatch.setenv(env, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
