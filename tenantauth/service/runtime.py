from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import (
    SessionBackend,
    Settings,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthLifecycleManager
from tenantauth.service.bounded import call_bounded
from tenantauth.service.passwords import CredentialVerifier
from tenantauth.service.revocation import RevocationStore
from tenantauth.service.sessions import SessionRegistry
from tenantauth.service.tenants import TenantContextResolver
from tenantauth.service.tokens import TokenCodec
from tenantauth.storage.memory import MemoryRateLimiter, MemoryRevocationList, MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the process-scoped clients and the services wired from them."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.settings.validate_for_startup()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            store_backend=settings.store_backend.value,
            session_backend=settings.session_backend.value,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if settings.store_backend == StoreBackend.MEMORY
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if settings.redis_url:
            self.cache = RedisCache(
                settings.redis_url, socket_timeout=settings.dependency_timeout_seconds
            )
        else:
            logger.warning(
                "redis_disabled_fallback",
                message="REDIS_URL not set; revocation list is in-process only",
                environment=settings.environment.value,
            )

        timeout = settings.dependency_timeout_seconds
        self.credentials = CredentialVerifier(
            time_cost=settings.argon2_time_cost,
            memory_cost_kib=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
        )
        self.codec = TokenCodec(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_ttl,
            refresh_ttl=settings.refresh_ttl,
            leeway_seconds=settings.clock_skew_seconds,
            tenant_isolation=settings.tenant_signing_isolation,
        )
        self.revocation = RevocationStore(
            self.cache if self.cache is not None else MemoryRevocationList(),
            fail_open=settings.revocation_fail_open,
            timeout_seconds=timeout,
        )
        session_backend = (
            self.cache
            if settings.session_backend == SessionBackend.REDIS and self.cache is not None
            else self.store
        )
        self.sessions = SessionRegistry(session_backend, timeout_seconds=timeout)
        self.rate_limiter: Union[RedisCache, MemoryRateLimiter] = (
            self.cache if self.cache is not None else MemoryRateLimiter()
        )
        self.tenants = TenantContextResolver(
            self.store,
            timeout_seconds=timeout,
            redirect_template=settings.tenant_redirect_template,
        )
        self.auth = AuthLifecycleManager(
            principals=self.store,
            credentials=self.credentials,
            codec=self.codec,
            revocation=self.revocation,
            sessions=self.sessions,
            tenants=self.tenants,
            password_change_revokes=settings.password_change_revokes,
            timeout_seconds=timeout,
        )

        logger.info(
            "runtime_initialized",
            redis_url=_mask_url_password(settings.redis_url),
            redis_enabled=self.cache is not None,
            revocation_fail_open=settings.revocation_fail_open,
            tenant_signing_isolation=settings.tenant_signing_isolation,
            password_change_revokes=settings.password_change_revokes.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket check against Redis when configured, else in-process.

    Returns ``(allowed, remaining, reset_seconds)``. A non-positive ``limit``
    disables the check. An unreachable Redis surfaces as
    DEPENDENCY_UNAVAILABLE like every other backend call.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    return await call_bounded(
        runtime.rate_limiter.check_rate_limit,
        key,
        limit,
        window_seconds,
        cost=cost,
        timeout=runtime.settings.dependency_timeout_seconds,
        dependency="rate_limiter",
    )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a freshly read environment for isolated tests."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if settings.is_production:
            raise RuntimeError("runtime reset is not allowed in production")
        runtime = Runtime(settings)
        return runtime
