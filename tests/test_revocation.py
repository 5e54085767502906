import asyncio

import pytest

from tenantauth.service.errors import AuthError, AuthErrorKind
from tenantauth.service.revocation import RevocationStore
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.memory import MemoryRevocationList


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class UnreachableBackend:
    async def revoke(self, token_id, ttl_seconds):
        raise StoreUnavailable("redis", "connection refused")

    async def is_revoked(self, token_id):
        raise StoreUnavailable("redis", "connection refused")


class SlowBackend:
    async def revoke(self, token_id, ttl_seconds):
        await asyncio.sleep(1)

    async def is_revoked(self, token_id):
        await asyncio.sleep(1)
        return True


class TestMemoryRevocationList:
    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        revoked = MemoryRevocationList(clock=clock)
        revoked.revoke("tok", 60)

        assert revoked.is_revoked("tok")
        clock.now += 61
        assert not revoked.is_revoked("tok")
        assert len(revoked) == 0

    def test_non_positive_ttl_is_ignored(self):
        revoked = MemoryRevocationList()
        revoked.revoke("tok", 0)
        revoked.revoke("tok2", -5)
        assert not revoked.is_revoked("tok")
        assert len(revoked) == 0

    def test_purge_expired_counts_removed(self):
        clock = FakeClock()
        revoked = MemoryRevocationList(clock=clock)
        revoked.revoke("a", 10)
        revoked.revoke("b", 100)
        clock.now += 50
        assert revoked.purge_expired() == 1
        assert revoked.is_revoked("b")

    def test_revoke_reclaims_expired_entries(self):
        clock = FakeClock()
        revoked = MemoryRevocationList(clock=clock)
        revoked.revoke("a", 10)
        revoked.revoke("b", 10)
        clock.now += 11

        revoked.revoke("c", 10)

        assert len(revoked) == 1
        assert revoked.is_revoked("c")


@pytest.mark.asyncio
async def test_store_round_trip_over_memory_backend():
    store = RevocationStore(MemoryRevocationList())
    assert not await store.is_revoked("tok")
    await store.revoke("tok", 30)
    assert await store.is_revoked("tok")
    # Idempotent
    await store.revoke("tok", 30)
    assert await store.is_revoked("tok")


@pytest.mark.asyncio
async def test_zero_ttl_never_reaches_backend():
    store = RevocationStore(UnreachableBackend())
    await store.revoke("tok", 0)


@pytest.mark.asyncio
async def test_unreachable_backend_fails_closed_by_default():
    store = RevocationStore(UnreachableBackend())

    with pytest.raises(AuthError) as excinfo:
        await store.is_revoked("tok")
    assert excinfo.value.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE
    assert excinfo.value.retryable

    with pytest.raises(AuthError):
        await store.revoke("tok", 30)


@pytest.mark.asyncio
async def test_unreachable_backend_fails_open_when_configured():
    store = RevocationStore(UnreachableBackend(), fail_open=True)
    assert await store.is_revoked("tok") is False
    await store.revoke("tok", 30)


@pytest.mark.asyncio
async def test_timeout_is_dependency_unavailable_not_an_answer():
    store = RevocationStore(SlowBackend(), timeout_seconds=0.05)
    with pytest.raises(AuthError) as excinfo:
        await store.is_revoked("tok")
    assert excinfo.value.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE
