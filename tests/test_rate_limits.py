import pytest

from tenantauth.service.errors import AuthError, AuthErrorKind
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.memory import MemoryRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryRateLimiter:
    def test_bucket_drains_then_refills(self):
        clock = FakeClock()
        limiter = MemoryRateLimiter(clock=clock)

        assert limiter.check_rate_limit("login:a", 2, 4) == (True, 1, 0)
        assert limiter.check_rate_limit("login:a", 2, 4) == (True, 0, 0)
        assert limiter.check_rate_limit("login:a", 2, 4) == (False, 0, 2)

        clock.now += 2
        assert limiter.check_rate_limit("login:a", 2, 4)[0]
        assert not limiter.check_rate_limit("login:a", 2, 4)[0]

    def test_keys_do_not_share_budget(self):
        limiter = MemoryRateLimiter(clock=FakeClock())
        assert limiter.check_rate_limit("login:a", 1, 60)[0]
        assert not limiter.check_rate_limit("login:a", 1, 60)[0]
        assert limiter.check_rate_limit("login:b", 1, 60)[0]

    def test_refilled_buckets_are_dropped_when_full(self, monkeypatch):
        clock = FakeClock()
        limiter = MemoryRateLimiter(clock=clock)
        monkeypatch.setattr(MemoryRateLimiter, "MAX_BUCKETS", 2)
        limiter.check_rate_limit("a", 1, 60)
        limiter.check_rate_limit("b", 1, 60)
        clock.now += 61

        limiter.check_rate_limit("c", 1, 60)

        assert len(limiter) == 1


class UnreachableLimiter:
    async def check_rate_limit(self, key, limit, window_seconds, *, cost=1):
        raise StoreUnavailable("redis", "connection refused")


@pytest.mark.asyncio
async def test_runtime_uses_in_process_limiter_without_redis():
    runtime = get_runtime()
    assert isinstance(runtime.rate_limiter, MemoryRateLimiter)

    assert (await check_rate_limit(runtime, "login:x", 1, 60))[0]
    assert not (await check_rate_limit(runtime, "login:x", 1, 60))[0]


@pytest.mark.asyncio
async def test_non_positive_limit_disables_check():
    runtime = get_runtime()
    for _ in range(5):
        assert (await check_rate_limit(runtime, "login:x", 0, 60))[0]


@pytest.mark.asyncio
async def test_limiter_outage_is_dependency_unavailable():
    runtime = get_runtime()
    runtime.rate_limiter = UnreachableLimiter()

    with pytest.raises(AuthError) as excinfo:
        await check_rate_limit(runtime, "login:x", 5, 60)
    assert excinfo.value.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE
