from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.bounded import call_bounded
from tenantauth.storage.models import Session

logger = get_logger(__name__)


class RotationResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class SessionBackend(Protocol):
    """Implemented by MemoryStore, PostgresStore (sync) and RedisCache (async)."""

    def create_session(
        self,
        subject: str,
        refresh_hash: str,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Any: ...

    def rotate_session(self, session_id: str, old_hash: str, new_hash: str, ttl: timedelta) -> Any: ...

    def delete_session(self, session_id: str) -> Any: ...

    def find_session(self, subject: str, refresh_hash: str) -> Any: ...

    def delete_subject_sessions(self, subject: str) -> Any: ...


class SessionRegistry:
    """Persists the hash of each session's one live refresh token.

    ``rotate`` is a compare-and-swap delegated to the backend, so of two
    callers presenting the same old hash exactly one gets ``OK``.
    """

    def __init__(self, backend: SessionBackend, *, timeout_seconds: float = 2.0) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def _call(self, fn, *args, **kwargs):
        return await call_bounded(
            fn, *args, timeout=self.timeout_seconds, dependency="session_registry", **kwargs
        )

    async def create(
        self,
        subject: str,
        refresh_hash: str,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> str:
        session: Session = await self._call(
            self.backend.create_session,
            subject,
            refresh_hash,
            ttl,
            tenant_id=tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        logger.info("session_created", session_id=session.id, principal_id=subject)
        return session.id

    async def rotate(
        self, session_id: str, old_hash: str, new_hash: str, new_ttl: timedelta
    ) -> RotationResult:
        swapped = await self._call(
            self.backend.rotate_session, session_id, old_hash, new_hash, new_ttl
        )
        if not swapped:
            logger.warning("session_rotation_conflict", session_id=session_id)
            return RotationResult.CONFLICT
        return RotationResult.OK

    async def invalidate(self, session_id: str) -> bool:
        removed = bool(await self._call(self.backend.delete_session, session_id))
        if removed:
            logger.info("session_invalidated", session_id=session_id)
        return removed

    async def find_by_subject_and_hash(self, subject: str, refresh_hash: str) -> Optional[Session]:
        return await self._call(self.backend.find_session, subject, refresh_hash)

    async def invalidate_all_for_subject(self, subject: str) -> int:
        removed = int(await self._call(self.backend.delete_subject_sessions, subject) or 0)
        logger.info("subject_sessions_invalidated", principal_id=subject, count=removed)
        return removed
