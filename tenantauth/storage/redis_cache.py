from __future__ import annotations

import hashlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tenantauth.logging import get_logger
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.models import Session

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed revocation list, refresh-session store and login rate limiter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    REVOKED_PREFIX = "auth:revoked:"
    SESSION_PREFIX = "auth:session:"
    SESSION_HASH_PREFIX = "auth:session_hash:"
    SUBJECT_SESSIONS_PREFIX = "auth:subject_sessions:"
    RATE_PREFIX = "auth:rate:"

    # Compare-and-swap of the session's refresh hash. Moves the hash index
    # key and resets TTLs in the same server-side step.
    _ROTATE_SESSION_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'refresh_hash')
if not current or current ~= ARGV[1] then
  return 0
end
local subject = redis.call('HGET', KEYS[1], 'subject')
local ttl = tonumber(ARGV[3])
redis.call('HSET', KEYS[1], 'refresh_hash', ARGV[2], 'expires_at', ARGV[4])
redis.call('EXPIRE', KEYS[1], ttl)
redis.call('DEL', ARGV[5] .. subject .. ':' .. ARGV[1])
redis.call('SET', ARGV[5] .. subject .. ':' .. ARGV[2], ARGV[6], 'EX', ttl)
redis.call('EXPIRE', ARGV[7] .. subject, ttl)
return 1
"""

    _DELETE_SESSION_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'subject', 'refresh_hash')
if not data[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('DEL', ARGV[1] .. data[1] .. ':' .. data[2])
redis.call('SREM', ARGV[2] .. data[1], ARGV[3])
return 1
"""

    # Token bucket refill and consumption in one server-side step
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", f"{operation}: {exc}") from exc

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.client.ping())

    # -- revocation -------------------------------------------------------

    async def revoke(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        async with self._guard("revoke"):
            await self.client.set(f"{self.REVOKED_PREFIX}{token_id}", "1", ex=ttl_seconds)

    async def is_revoked(self, token_id: str) -> bool:
        async with self._guard("is_revoked"):
            return bool(await self.client.exists(f"{self.REVOKED_PREFIX}{token_id}"))

    # -- rate limiting ----------------------------------------------------

    @classmethod
    def _rate_key(cls, key: str) -> str:
        """Hash the logical key so emails and addresses never reach Redis verbatim."""
        return f"{cls.RATE_PREFIX}{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        async with self._guard("check_rate_limit"):
            allowed, tokens, reset_after = await self.client.eval(
                self._TOKEN_BUCKET_SCRIPT,
                1,
                self._rate_key(key),
                time.time(),
                refill_rate,
                limit,
                max(1, cost),
            )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    # -- sessions ---------------------------------------------------------

    def _session_key(self, session_id: str) -> str:
        return f"{self.SESSION_PREFIX}{session_id}"

    def _hash_key(self, subject: str, refresh_hash: str) -> str:
        return f"{self.SESSION_HASH_PREFIX}{subject}:{refresh_hash}"

    def _subject_key(self, subject: str) -> str:
        return f"{self.SUBJECT_SESSIONS_PREFIX}{subject}"

    @staticmethod
    def _session_from_hash(session_id: str, data: dict) -> Session:
        return Session(
            id=session_id,
            subject=data["subject"],
            refresh_hash=data["refresh_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            tenant_id=data.get("tenant_id") or None,
            user_agent=data.get("user_agent") or None,
            ip_addr=data.get("ip_addr") or None,
        )

    async def create_session(
        self,
        subject: str,
        refresh_hash: str,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            subject,
            refresh_hash,
            ttl,
            tenant_id=tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        ttl_seconds = self._ttl_seconds(sess.expires_at)
        async with self._guard("create_session"):
            pipe = self.client.pipeline()
            pipe.hset(
                self._session_key(sess.id),
                mapping={
                    "subject": subject,
                    "refresh_hash": refresh_hash,
                    "created_at": sess.created_at.isoformat(),
                    "expires_at": sess.expires_at.isoformat(),
                    "tenant_id": tenant_id or "",
                    "user_agent": user_agent or "",
                    "ip_addr": ip_addr or "",
                },
            )
            pipe.expire(self._session_key(sess.id), ttl_seconds)
            pipe.set(self._hash_key(subject, refresh_hash), sess.id, ex=ttl_seconds)
            pipe.sadd(self._subject_key(subject), sess.id)
            pipe.expire(self._subject_key(subject), ttl_seconds)
            await pipe.execute()
        return sess

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._guard("get_session"):
            data = await self.client.hgetall(self._session_key(session_id))
        if not data:
            return None
        return self._session_from_hash(session_id, data)

    async def rotate_session(
        self, session_id: str, old_hash: str, new_hash: str, ttl: timedelta
    ) -> bool:
        expires_at = datetime.now(timezone.utc) + ttl
        async with self._guard("rotate_session"):
            result = await self.client.eval(
                self._ROTATE_SESSION_SCRIPT,
                1,
                self._session_key(session_id),
                old_hash,
                new_hash,
                self._ttl_seconds(expires_at),
                expires_at.isoformat(),
                self.SESSION_HASH_PREFIX,
                session_id,
                self.SUBJECT_SESSIONS_PREFIX,
            )
        return bool(int(result or 0))

    async def delete_session(self, session_id: str) -> bool:
        async with self._guard("delete_session"):
            result = await self.client.eval(
                self._DELETE_SESSION_SCRIPT,
                1,
                self._session_key(session_id),
                self.SESSION_HASH_PREFIX,
                self.SUBJECT_SESSIONS_PREFIX,
                session_id,
            )
        return bool(int(result or 0))

    async def find_session(self, subject: str, refresh_hash: str) -> Optional[Session]:
        async with self._guard("find_session"):
            session_id = await self.client.get(self._hash_key(subject, refresh_hash))
            if not session_id:
                return None
            data = await self.client.hgetall(self._session_key(session_id))
        if not data:
            return None
        # The index key may briefly outlive a rotation; trust only the session hash
        if data.get("subject") != subject or data.get("refresh_hash") != refresh_hash:
            return None
        return self._session_from_hash(session_id, data)

    async def delete_subject_sessions(self, subject: str) -> int:
        async with self._guard("delete_subject_sessions"):
            session_ids = await self.client.smembers(self._subject_key(subject))
        removed = 0
        for session_id in session_ids or ():
            if await self.delete_session(session_id):
                removed += 1
        async with self._guard("delete_subject_sessions"):
            await self.client.delete(self._subject_key(subject))
        return removed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
