import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SESSION_BACKEND", "store")
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters; hashing cost is not under test
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def seeded():
    """A principal in two tenants (one of them closed) plus an outsider tenant."""
    from tenantauth.service.runtime import get_runtime
    from tenantauth.storage.models import TenantStatus

    runtime = get_runtime()
    store = runtime.store
    principal = store.create_principal(
        "alice@example.com",
        runtime.credentials.hash(TEST_PASSWORD),
        display_name="Alice",
    )
    acme = store.create_tenant("Acme", "acme")
    globex = store.create_tenant("Globex", "globex", status=TenantStatus.INACTIVE)
    initech = store.create_tenant("Initech", "initech")
    store.add_membership(principal.id, acme.id, "admin")
    store.add_membership(principal.id, globex.id, "member")
    return {
        "runtime": runtime,
        "principal": principal,
        "password": TEST_PASSWORD,
        "acme": acme,
        "globex": globex,
        "initech": initech,
    }


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
