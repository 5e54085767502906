from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.models import (
    Principal,
    PrincipalStatus,
    Session,
    Tenant,
    TenantMembership,
    TenantStatus,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        display_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_authenticated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        subdomain TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_membership (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        PRIMARY KEY (principal_id, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        refresh_hash TEXT NOT NULL,
        tenant_id TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_subject_hash_idx ON auth_session (subject, refresh_hash)",
)


class PostgresStore:
    """Postgres-backed principal, tenant and session store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _principal_from_row(row: dict) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            status=PrincipalStatus(row.get("status") or "active"),
            display_name=row.get("display_name"),
            created_at=row.get("created_at") or utcnow(),
            last_authenticated_at=row.get("last_authenticated_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            subject=str(row["subject"]),
            refresh_hash=row["refresh_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            tenant_id=row.get("tenant_id"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

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
        principal = Principal(
            id=principal_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            status=PrincipalStatus(status),
            display_name=display_name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, email, password_hash, status, display_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.email,
                        principal.password_hash,
                        principal.status.value,
                        principal.display_name,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def set_principal_status(self, principal_id: str, status: PrincipalStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET status = %s WHERE id = %s",
                (PrincipalStatus(status).value, principal_id),
            )

    def update_last_authenticated(self, principal_id: str, timestamp: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET last_authenticated_at = %s WHERE id = %s",
                (timestamp, principal_id),
            )

    def save_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE principal SET password_hash = %s WHERE id = %s",
                (password_hash, principal_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        subdomain: str,
        *,
        status: TenantStatus = TenantStatus.ACTIVE,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(
            id=tenant_id or str(uuid.uuid4()),
            name=name,
            subdomain=subdomain,
            status=TenantStatus(status),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tenant (id, name, subdomain, status, created_at) VALUES (%s, %s, %s, %s, %s)",
                    (tenant.id, tenant.name, tenant.subdomain, tenant.status.value, tenant.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("subdomain already exists", {"field": "subdomain"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        if not row:
            return None
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            subdomain=row["subdomain"],
            status=TenantStatus(row.get("status") or "active"),
            created_at=row.get("created_at") or utcnow(),
        )

    def add_membership(self, principal_id: str, tenant_id: str, role: str) -> TenantMembership:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant_membership (principal_id, tenant_id, role)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (principal_id, tenant_id) DO UPDATE SET role = EXCLUDED.role
                    """,
                    (principal_id, tenant_id, role),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal or tenant missing",
                {"principal_id": principal_id, "tenant_id": tenant_id},
            )
        tenant = self.get_tenant(tenant_id)
        return TenantMembership(
            principal_id=principal_id,
            tenant_id=tenant_id,
            role=role,
            tenant_status=tenant.status if tenant else TenantStatus.INACTIVE,
            tenant_name=tenant.name if tenant else None,
            tenant_subdomain=tenant.subdomain if tenant else None,
        )

    def list_memberships_for_principal(self, principal_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.principal_id, m.tenant_id, m.role,
                       t.status AS tenant_status, t.name AS tenant_name, t.subdomain AS tenant_subdomain
                FROM tenant_membership m
                JOIN tenant t ON t.id = m.tenant_id
                WHERE m.principal_id = %s
                ORDER BY t.name
                """,
                (principal_id,),
            ).fetchall()
        return [
            TenantMembership(
                principal_id=str(row["principal_id"]),
                tenant_id=str(row["tenant_id"]),
                role=row["role"],
                tenant_status=TenantStatus(row.get("tenant_status") or "inactive"),
                tenant_name=row.get("tenant_name"),
                tenant_subdomain=row.get("tenant_subdomain"),
            )
            for row in rows
        ]

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
        sess = Session.new(
            subject,
            refresh_hash,
            ttl,
            tenant_id=tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, subject, refresh_hash, tenant_id, user_agent, ip_addr, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.subject,
                        sess.refresh_hash,
                        sess.tenant_id,
                        sess.user_agent,
                        sess.ip_addr,
                        sess.created_at,
                        sess.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session principal missing", {"principal_id": subject})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def rotate_session(
        self, session_id: str, old_hash: str, new_hash: str, ttl: timedelta
    ) -> bool:
        """Conditional update; only the caller presenting the current hash wins."""
        now = utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET refresh_hash = %s, expires_at = %s
                WHERE id = %s AND refresh_hash = %s AND expires_at > %s
                """,
                (new_hash, now + ttl, session_id, old_hash, now),
            )
            return cur.rowcount == 1

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def find_session(self, subject: str, refresh_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE subject = %s AND refresh_hash = %s AND expires_at > %s
                """,
                (subject, refresh_hash, utcnow()),
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def delete_subject_sessions(self, subject: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE subject = %s", (subject,))
            return max(cur.rowcount, 0)
