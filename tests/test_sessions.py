import asyncio
from datetime import timedelta

import pytest

from tenantauth.service.errors import AuthError, AuthErrorKind
from tenantauth.service.sessions import RotationResult, SessionRegistry
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.memory import MemoryStore

TTL = timedelta(days=7)


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_principal("bob@example.com", None, principal_id="user-1")
    store.create_principal("carol@example.com", None, principal_id="user-2")
    return store


@pytest.fixture
def registry(store):
    return SessionRegistry(store, timeout_seconds=1.0)


class TestMemoryStoreSessions:
    def test_rotate_is_compare_and_swap(self, store):
        session = store.create_session("user-1", "hash-a", TTL)

        assert store.rotate_session(session.id, "hash-a", "hash-b", TTL)
        assert not store.rotate_session(session.id, "hash-a", "hash-c", TTL)
        assert store.get_session(session.id).refresh_hash == "hash-b"

    def test_expired_session_cannot_rotate_or_be_found(self, store):
        session = store.create_session("user-1", "hash-a", TTL)
        store.sessions[session.id].expires_at -= TTL + timedelta(seconds=1)

        assert store.find_session("user-1", "hash-a") is None
        assert not store.rotate_session(session.id, "hash-a", "hash-b", TTL)

    def test_find_requires_matching_subject(self, store):
        store.create_session("user-1", "hash-a", TTL)
        assert store.find_session("user-2", "hash-a") is None
        assert store.find_session("user-1", "hash-a") is not None

    def test_unknown_principal_is_a_constraint_violation(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session("ghost", "hash-a", TTL)

    def test_returned_sessions_are_copies(self, store):
        session = store.create_session("user-1", "hash-a", TTL)
        session.refresh_hash = "tampered"
        assert store.get_session(session.id).refresh_hash == "hash-a"

    def test_expired_sessions_are_reclaimed_on_create(self, store):
        stale = store.create_session("user-1", "hash-a", TTL)
        store.sessions[stale.id].expires_at -= TTL + timedelta(seconds=1)

        fresh = store.create_session("user-2", "hash-b", TTL)

        assert list(store.sessions) == [fresh.id]


@pytest.mark.asyncio
async def test_registry_lifecycle(registry):
    session_id = await registry.create("user-1", "hash-a", TTL, tenant_id="t-1", user_agent="pytest")

    found = await registry.find_by_subject_and_hash("user-1", "hash-a")
    assert found.id == session_id
    assert found.tenant_id == "t-1"
    assert found.user_agent == "pytest"

    assert await registry.rotate(session_id, "hash-a", "hash-b", TTL) is RotationResult.OK
    assert await registry.find_by_subject_and_hash("user-1", "hash-a") is None
    assert await registry.rotate(session_id, "hash-a", "hash-c", TTL) is RotationResult.CONFLICT

    assert await registry.invalidate(session_id) is True
    assert await registry.invalidate(session_id) is False
    assert await registry.find_by_subject_and_hash("user-1", "hash-b") is None


@pytest.mark.asyncio
async def test_concurrent_rotation_has_exactly_one_winner(registry):
    session_id = await registry.create("user-1", "hash-a", TTL)

    results = await asyncio.gather(
        *(registry.rotate(session_id, "hash-a", f"hash-{i}", TTL) for i in range(8))
    )

    assert results.count(RotationResult.OK) == 1
    assert results.count(RotationResult.CONFLICT) == 7


@pytest.mark.asyncio
async def test_invalidate_all_for_subject_leaves_others(registry, store):
    await registry.create("user-1", "hash-a", TTL)
    await registry.create("user-1", "hash-b", TTL)
    other = await registry.create("user-2", "hash-c", TTL)

    assert await registry.invalidate_all_for_subject("user-1") == 2
    assert await registry.invalidate_all_for_subject("user-1") == 0
    assert store.get_session(other) is not None


class UnreachableSessions:
    async def find_session(self, subject, refresh_hash):
        raise StoreUnavailable("redis", "connection reset")


@pytest.mark.asyncio
async def test_backend_outage_is_dependency_unavailable():
    registry = SessionRegistry(UnreachableSessions(), timeout_seconds=1.0)
    with pytest.raises(AuthError) as excinfo:
        await registry.find_by_subject_and_hash("user-1", "hash-a")
    assert excinfo.value.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE

