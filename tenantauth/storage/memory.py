from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Principal,
    PrincipalStatus,
    Session,
    Tenant,
    TenantMembership,
    TenantStatus,
    utcnow,
)


class MemoryStore:
    """In-memory principal, tenant and session store for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self.tenants: Dict[str, Tenant] = {}
        # (principal_id, tenant_id) -> role
        self.memberships: Dict[Tuple[str, str], str] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations; nested acquisition within one thread is allowed
        self._data_lock = threading.RLock()

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
        display_name: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=principal_id or str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                status=PrincipalStatus(status),
                display_name=display_name,
            )
            self.principals[principal.id] = principal
            self._email_index[normalized] = principal.id
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(email.strip().lower())
            if not principal_id:
                return None
            return replace(self.principals[principal_id])

    def set_principal_status(self, principal_id: str, status: PrincipalStatus) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            principal.status = PrincipalStatus(status)

    def update_last_authenticated(self, principal_id: str, timestamp: datetime) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal:
                principal.last_authenticated_at = timestamp

    def save_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            principal.password_hash = password_hash

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        subdomain: str,
        *,
        status: TenantStatus = TenantStatus.ACTIVE,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        with self._data_lock:
            if any(t.subdomain == subdomain for t in self.tenants.values()):
                raise ConstraintViolation("subdomain already exists", {"field": "subdomain"})
            tenant = Tenant(
                id=tenant_id or str(uuid.uuid4()),
                name=name,
                subdomain=subdomain,
                status=TenantStatus(status),
            )
            self.tenants[tenant.id] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> None:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            tenant.status = TenantStatus(status)

    def add_membership(self, principal_id: str, tenant_id: str, role: str) -> TenantMembership:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            self.memberships[(principal_id, tenant_id)] = role
            return self._membership(principal_id, tenant, role)

    def list_memberships_for_principal(self, principal_id: str) -> List[TenantMembership]:
        with self._data_lock:
            result = []
            for (member_id, tenant_id), role in self.memberships.items():
                if member_id != principal_id:
                    continue
                tenant = self.tenants.get(tenant_id)
                if tenant:
                    result.append(self._membership(principal_id, tenant, role))
            return sorted(result, key=lambda m: m.tenant_name or m.tenant_id)

    @staticmethod
    def _membership(principal_id: str, tenant: Tenant, role: str) -> TenantMembership:
        return TenantMembership(
            principal_id=principal_id,
            tenant_id=tenant.id,
            role=role,
            tenant_status=tenant.status,
            tenant_name=tenant.name,
            tenant_subdomain=tenant.subdomain,
        )

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        subject: str,
        refresh_hash: str,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if subject not in self.principals:
                raise ConstraintViolation("principal does not exist", {"principal_id": subject})
            self._prune_expired_sessions()
            sess = Session.new(
                subject,
                refresh_hash,
                ttl,
                tenant_id=tenant_id,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def _prune_expired_sessions(self) -> int:
        now = utcnow()
        expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
        for sid in expired:
            self.sessions.pop(sid, None)
        return len(expired)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def rotate_session(
        self, session_id: str, old_hash: str, new_hash: str, ttl: timedelta
    ) -> bool:
        """Swap the refresh hash only if ``old_hash`` is still current."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            now = utcnow()
            if not sess or sess.is_expired(now) or sess.refresh_hash != old_hash:
                return False
            sess.refresh_hash = new_hash
            sess.expires_at = now + ttl
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def find_session(self, subject: str, refresh_hash: str) -> Optional[Session]:
        with self._data_lock:
            now = utcnow()
            for sess in self.sessions.values():
                if (
                    sess.subject == subject
                    and sess.refresh_hash == refresh_hash
                    and not sess.is_expired(now)
                ):
                    return replace(sess)
            return None

    def delete_subject_sessions(self, subject: str) -> int:
        with self._data_lock:
            stale_ids = [sid for sid, sess in self.sessions.items() if sess.subject == subject]
            for sid in stale_ids:
                self.sessions.pop(sid, None)
            return len(stale_ids)

    def close(self) -> None:
        return None


class MemoryRevocationList:
    """Expiring set of revoked token identifiers for single-process deployments."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def revoke(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._purge_locked()
            self._entries[token_id] = self._clock() + ttl_seconds

    def is_revoked(self, token_id: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(token_id)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                self._entries.pop(token_id, None)
                return False
            return True

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [key for key, exp in self._entries.items() if exp <= now]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MemoryRateLimiter:
    """Per-key token buckets for single-process deployments."""

    MAX_BUCKETS = 10_000

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key -> (tokens, last refill, time at which the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()

    def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens from ``key``'s bucket.

        Returns ``(allowed, remaining, reset_seconds)``.
        """
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            now = self._clock()
            tokens, last, _ = self._buckets.get(key, (float(limit), now, now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, now + (limit - tokens) / refill_rate)
            if len(self._buckets) > self.MAX_BUCKETS:
                self._drop_full_buckets(now)
        reset_seconds = 0 if allowed else int(math.ceil((cost - tokens) / refill_rate))
        return allowed, int(tokens), reset_seconds

    def _drop_full_buckets(self, now: float) -> None:
        full = [key for key, (_, _, full_at) in self._buckets.items() if full_at <= now]
        for key in full:
            self._buckets.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
