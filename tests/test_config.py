from datetime import timedelta

import pytest

from tenantauth.config import (
    Environment,
    PasswordChangeRevokes,
    SessionBackend,
    Settings,
    StoreBackend,
    parse_duration,
    reset_settings_cache,
    get_settings,
)
from tenantauth.service.errors import ConfigurationError

SECRET = "0123456789abcdef0123456789abcdef"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("30s", timedelta(seconds=30)),
        ("15m", timedelta(minutes=15)),
        ("2h", timedelta(hours=2)),
        ("7d", timedelta(days=7)),
        ("2w", timedelta(weeks=2)),
        ("1y", timedelta(days=365)),
    ],
)
def test_parse_duration_units(raw, expected):
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "15", "m", "15x", "-5m", "0m", "1.5h", "15 m"])
def test_parse_duration_rejects_malformed(raw):
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_defaults_are_fifteen_minutes_and_seven_days():
    settings = Settings(jwt_secret=SECRET)
    assert settings.access_ttl == timedelta(minutes=15)
    assert settings.refresh_ttl == timedelta(days=7)
    assert settings.password_change_revokes is PasswordChangeRevokes.ALL
    assert settings.revocation_fail_open is False


def test_malformed_ttl_falls_back_outside_production():
    settings = Settings(jwt_secret=SECRET, access_token_ttl="soon", refresh_token_ttl="later")
    settings.validate_for_startup()
    assert settings.access_ttl == timedelta(minutes=15)
    assert settings.refresh_ttl == timedelta(days=7)


def _production(**overrides) -> Settings:
    values = dict(
        environment=Environment.PRODUCTION,
        jwt_secret=SECRET,
        redis_url="redis://cache:6379/0",
        store_backend=StoreBackend.POSTGRES,
    )
    values.update(overrides)
    return Settings(**values)


def test_production_profile_passes_when_complete():
    _production().validate_for_startup()


def test_production_rejects_malformed_ttl():
    settings = _production(access_token_ttl="15 minutes")
    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate_for_startup()
    assert any("ACCESS_TOKEN_TTL" in p for p in excinfo.value.problems)
    with pytest.raises(ConfigurationError):
        _ = settings.access_ttl


def test_production_rejects_fail_open_and_memory_store():
    settings = _production(revocation_fail_open=True, store_backend=StoreBackend.MEMORY, redis_url=None)
    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate_for_startup()
    problems = " ".join(excinfo.value.problems)
    assert "REVOCATION_FAIL_OPEN" in problems
    assert "REDIS_URL" in problems
    assert "STORE_BACKEND" in problems


def test_missing_or_short_secret_is_fatal_everywhere():
    with pytest.raises(ConfigurationError):
        Settings(jwt_secret=None).validate_for_startup()
    with pytest.raises(ConfigurationError):
        Settings(jwt_secret="short").validate_for_startup()
    with pytest.raises(ConfigurationError):
        Settings(jwt_secret="   ").validate_for_startup()


def test_empty_issuer_is_fatal():
    with pytest.raises(ConfigurationError):
        Settings(jwt_secret=SECRET, jwt_issuer=" ").validate_for_startup()


def test_redis_sessions_require_redis_url():
    settings = Settings(jwt_secret=SECRET, session_backend=SessionBackend.REDIS)
    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate_for_startup()
    assert "SESSION_BACKEND=redis requires REDIS_URL" in excinfo.value.problems


def test_fail_open_allowed_in_development():
    Settings(jwt_secret=SECRET, revocation_fail_open=True).validate_for_startup()


def test_non_positive_timeout_rejected():
    with pytest.raises(ValueError):
        Settings(jwt_secret=SECRET, dependency_timeout_seconds=0)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
    monkeypatch.setenv("PASSWORD_CHANGE_REVOKES", "current")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
    reset_settings_cache()
    settings = get_settings()
    assert settings.access_ttl == timedelta(minutes=5)
    assert settings.password_change_revokes is PasswordChangeRevokes.CURRENT
    assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.redis_url is None
    reset_settings_cache()
