from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.models import PrincipalStatus, TenantStatus
from tenantauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        outcome = self.pool.responses.pop(0) if self.pool.responses else FakeCursor()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *responses):
        self.statements = []
        self.responses = list(responses)

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


class DownPool:
    @contextmanager
    def connection(self):
        raise psycopg.OperationalError("could not connect to server")
        yield  # pragma: no cover


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://fake"
    store.pool = pool
    store.logger = get_logger("test")
    return store


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _session_row(**overrides):
    row = {
        "id": "sess-1",
        "subject": "user-1",
        "refresh_hash": "hash-a",
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "tenant_id": None,
        "user_agent": "pytest",
        "ip_addr": None,
    }
    row.update(overrides)
    return row


def test_rotate_session_uses_conditional_update():
    pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(pool)

    assert store.rotate_session("sess-1", "hash-a", "hash-b", timedelta(days=7)) is True
    assert store.rotate_session("sess-1", "hash-a", "hash-c", timedelta(days=7)) is False

    sql, params = pool.statements[0]
    assert sql.startswith("UPDATE auth_session SET refresh_hash = %s")
    assert "WHERE id = %s AND refresh_hash = %s AND expires_at > %s" in sql
    assert params[0] == "hash-b"
    assert params[2:4] == ("sess-1", "hash-a")


def test_find_session_maps_row():
    pool = FakePool(FakeCursor(rows=[_session_row(tenant_id="t-1")]))
    session = _store(pool).find_session("user-1", "hash-a")

    assert session.id == "sess-1"
    assert session.tenant_id == "t-1"
    assert session.user_agent == "pytest"
    sql, params = pool.statements[0]
    assert "expires_at > %s" in sql
    assert params[:2] == ("user-1", "hash-a")


def test_find_session_missing_returns_none():
    assert _store(FakePool(FakeCursor())).find_session("user-1", "hash-a") is None


def test_delete_counts_use_rowcount():
    pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0), FakeCursor(rowcount=3))
    store = _store(pool)
    assert store.delete_session("sess-1") is True
    assert store.delete_session("sess-1") is False
    assert store.delete_subject_sessions("user-1") == 3


def test_duplicate_email_is_constraint_violation():
    pool = FakePool(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        _store(pool).create_principal("Dup@Example.com", None)


def test_create_principal_normalizes_email():
    pool = FakePool()
    principal = _store(pool).create_principal("  Alice@Example.COM ", "hash")
    assert principal.email == "alice@example.com"
    assert pool.statements[0][1][1] == "alice@example.com"


def test_memberships_join_tenant_status():
    rows = [
        {
            "principal_id": "user-1",
            "tenant_id": "t-1",
            "role": "admin",
            "tenant_status": "active",
            "tenant_name": "Acme",
            "tenant_subdomain": "acme",
        },
        {
            "principal_id": "user-1",
            "tenant_id": "t-2",
            "role": "member",
            "tenant_status": "inactive",
            "tenant_name": "Globex",
            "tenant_subdomain": "globex",
        },
    ]
    memberships = _store(FakePool(FakeCursor(rows=rows))).list_memberships_for_principal("user-1")

    assert [m.tenant_id for m in memberships] == ["t-1", "t-2"]
    assert memberships[0].tenant_active
    assert memberships[1].tenant_status is TenantStatus.INACTIVE


def test_principal_row_mapping():
    row = {
        "id": "user-1",
        "email": "alice@example.com",
        "password_hash": "$argon2id$...",
        "status": "blocked",
        "display_name": None,
        "created_at": NOW,
        "last_authenticated_at": None,
    }
    principal = _store(FakePool(FakeCursor(rows=[row]))).get_principal("user-1")
    assert principal.status is PrincipalStatus.BLOCKED
    assert not principal.is_active


def test_save_password_hash_for_missing_principal():
    with pytest.raises(ConstraintViolation):
        _store(FakePool(FakeCursor(rowcount=0))).save_password_hash("ghost", "hash")


def test_operational_error_becomes_store_unavailable():
    with pytest.raises(StoreUnavailable) as excinfo:
        _store(DownPool()).get_principal("user-1")
    assert excinfo.value.backend == "postgres"
