from __future__ import annotations

import os
import re
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
DEFAULT_ACCESS_TOKEN_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TOKEN_TTL = timedelta(days=7)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhdwy])$")
_DURATION_UNITS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}


def parse_duration(value: str) -> timedelta:
    """Parse a symbolic duration such as ``15m`` or ``7d``.

    Units: s, m, h, d, w and y (a 365-day year). Raises ``ValueError`` for
    anything else, including zero durations.
    """
    match = _DURATION_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"invalid duration {value!r}; expected <number><s|m|h|d|w|y>")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return timedelta(seconds=amount * _DURATION_UNITS[match.group(2)])


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class StoreBackend(str, Enum):
    """Where principals, tenants and memberships are read from."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class SessionBackend(str, Enum):
    """Where refresh-token sessions are kept."""

    STORE = "store"
    REDIS = "redis"


class PasswordChangeRevokes(str, Enum):
    """Which sessions a successful password change invalidates."""

    ALL = "all"
    CURRENT = "current"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration loaded from the environment and ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")

    # Token signing
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        "15m", "ACCESS_TOKEN_TTL", description="Access token lifetime, e.g. 15m or 1h"
    )
    refresh_token_ttl: str = env_field(
        "7d", "REFRESH_TOKEN_TTL", description="Refresh token lifetime, e.g. 7d or 2w"
    )
    clock_skew_seconds: int = env_field(
        30, "CLOCK_SKEW_SECONDS", description="Leeway applied to token expiry checks"
    )
    tenant_signing_isolation: bool = env_field(
        False,
        "TENANT_SIGNING_ISOLATION",
        description="Sign tenant-bound access tokens with a per-tenant derived key and audience",
    )
    tenant_redirect_template: Optional[str] = env_field(
        None,
        "TENANT_REDIRECT_TEMPLATE",
        description="Redirect target after tenant selection, e.g. https://{subdomain}.example.com",
    )

    # Backends
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    session_backend: SessionBackend = env_field(SessionBackend.STORE, "SESSION_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    dependency_timeout_seconds: float = env_field(
        2.0,
        "DEPENDENCY_TIMEOUT_SECONDS",
        description="Upper bound for every revocation, session and repository call",
    )
    revocation_fail_open: bool = env_field(
        False,
        "REVOCATION_FAIL_OPEN",
        description="Treat tokens as not revoked when the revocation store is unreachable (non-production only)",
    )

    # HTTP surface
    cors_allow_origins: Optional[str] = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed browser origins"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    login_rate_limit_per_minute: int = env_field(
        10, "LOGIN_RATE_LIMIT_PER_MINUTE", description="Login attempts per email per minute; 0 disables"
    )
    login_ip_rate_limit_per_minute: int = env_field(
        60, "LOGIN_IP_RATE_LIMIT_PER_MINUTE", description="Login attempts per client address per minute; 0 disables"
    )
    refresh_rate_limit_per_minute: int = env_field(
        60, "REFRESH_RATE_LIMIT_PER_MINUTE", description="Refresh calls per client address per minute; 0 disables"
    )

    # Credential policy
    password_change_revokes: PasswordChangeRevokes = env_field(
        PasswordChangeRevokes.ALL, "PASSWORD_CHANGE_REVOKES"
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(64 * 1024, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", "redis_url", "tenant_redirect_template", "cors_allow_origins")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("dependency_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("DEPENDENCY_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CLOCK_SKEW_SECONDS must not be negative")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def access_ttl(self) -> timedelta:
        return self._resolve_ttl("ACCESS_TOKEN_TTL", self.access_token_ttl, DEFAULT_ACCESS_TOKEN_TTL)

    @property
    def refresh_ttl(self) -> timedelta:
        return self._resolve_ttl("REFRESH_TOKEN_TTL", self.refresh_token_ttl, DEFAULT_REFRESH_TOKEN_TTL)

    def _resolve_ttl(self, env_name: str, raw: str, default: timedelta) -> timedelta:
        try:
            return parse_duration(raw)
        except ValueError as exc:
            if self.is_production:
                raise ConfigurationError([f"{env_name}: {exc}"]) from exc
            logger.warning(
                "token_ttl_invalid_using_default",
                setting=env_name,
                value=raw,
                default_seconds=int(default.total_seconds()),
            )
            return default

    def validate_for_startup(self) -> None:
        """Raise ``ConfigurationError`` listing every fatal problem.

        Non-production profiles tolerate malformed TTLs (a default is used
        with a warning) and may opt into fail-open revocation.
        """
        problems: list[str] = []
        if not self.jwt_secret:
            problems.append("JWT_SECRET is required")
        elif len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            problems.append(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if not self.jwt_issuer.strip():
            problems.append("JWT_ISSUER must not be empty")
        if not self.jwt_audience.strip():
            problems.append("JWT_AUDIENCE must not be empty")
        for env_name, raw in (
            ("ACCESS_TOKEN_TTL", self.access_token_ttl),
            ("REFRESH_TOKEN_TTL", self.refresh_token_ttl),
        ):
            try:
                parse_duration(raw)
            except ValueError as exc:
                if self.is_production:
                    problems.append(f"{env_name}: {exc}")
        if self.session_backend == SessionBackend.REDIS and not self.redis_url:
            problems.append("SESSION_BACKEND=redis requires REDIS_URL")
        if self.is_production:
            if self.revocation_fail_open:
                problems.append("REVOCATION_FAIL_OPEN is not allowed in production")
            if not self.redis_url:
                problems.append("REDIS_URL is required in production")
            if self.store_backend == StoreBackend.MEMORY:
                problems.append("STORE_BACKEND=memory is not allowed in production")
        if problems:
            logger.error("configuration_invalid", problems=problems)
            raise ConfigurationError(problems)
        if self.revocation_fail_open:
            logger.warning(
                "revocation_fail_open_enabled",
                environment=self.environment.value,
                message="revoked tokens may be accepted while the revocation store is unreachable",
            )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
