from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class Principal:
    id: str
    email: str
    password_hash: Optional[str] = None
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_authenticated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE


@dataclass
class Tenant:
    id: str
    name: str
    subdomain: str
    status: TenantStatus = TenantStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantMembership:
    """A principal's role within a tenant, joined with the tenant's own state."""

    principal_id: str
    tenant_id: str
    role: str
    tenant_status: TenantStatus = TenantStatus.ACTIVE
    tenant_name: Optional[str] = None
    tenant_subdomain: Optional[str] = None

    @property
    def tenant_active(self) -> bool:
        return self.tenant_status == TenantStatus.ACTIVE


@dataclass
class Session:
    """A login session holding the hash of its one currently valid refresh token."""

    id: str
    subject: str
    refresh_hash: str
    created_at: datetime
    expires_at: datetime
    tenant_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject: str,
        refresh_hash: str,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            subject=subject,
            refresh_hash=refresh_hash,
            created_at=now,
            expires_at=now + ttl,
            tenant_id=tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
