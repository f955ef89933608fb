import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Must be set before any import that builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty URL: no Redis connection attempt, the runtime falls back to MemoryCache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authbase.clock import ManualClock  # noqa: E402
from authbase.service.audit import SecurityEventRecorder  # noqa: E402
from authbase.service.authenticator import CredentialAuthenticator  # noqa: E402
from authbase.service.lockout import LockoutPolicy  # noqa: E402
from authbase.service.passwords import PasswordHasher  # noqa: E402
from authbase.service.permissions import PermissionResolver  # noqa: E402
from authbase.service.refresh_tokens import RefreshTokenStore  # noqa: E402
from authbase.service.revocation import RevocationConfig, RevocationStore  # noqa: E402
from authbase.service.runtime import reset_runtime_for_tests  # noqa: E402
from authbase.service.sessions import SessionManager  # noqa: E402
from authbase.service.tokens import TokenCodec, TokenConfig  # noqa: E402
from authbase.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture(scope="session")
def hasher():
    return PasswordHasher()


@pytest.fixture
def password():
    return "Correct-Horse-Battery-42"


@pytest.fixture
def audit(memory_store, clock):
    return SecurityEventRecorder(memory_store, clock=clock)


@pytest.fixture
def codec(clock):
    return TokenCodec(TokenConfig(secret=TEST_SECRET), clock=clock)


@pytest.fixture
def revocation_cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def revocation(revocation_cache, clock):
    return RevocationStore(revocation_cache, RevocationConfig(), clock=clock)


@pytest.fixture
def refresh_tokens(memory_store, clock):
    return RefreshTokenStore(memory_store, clock=clock)


@pytest.fixture
def authenticator(memory_store, hasher, audit, clock):
    return CredentialAuthenticator(memory_store, hasher, LockoutPolicy(), audit, clock=clock)


@pytest.fixture
def sessions(memory_store, authenticator, codec, refresh_tokens, revocation, audit, clock):
    return SessionManager(
        memory_store,
        authenticator,
        codec,
        refresh_tokens,
        revocation,
        PermissionResolver(),
        audit,
        clock=clock,
    )


@pytest.fixture
def roles(memory_store):
    memory_store.create_role("USER", "Regular user", ["profile:read", "profile:write"])
    memory_store.create_role("AUDITOR", "Read-only auditor", ["profile:read", "security:audit:read"])
    return memory_store


@pytest.fixture
def principal(roles, hasher, password):
    return roles.create_principal(
        "alice@example.com", hasher.hash(password), email_verified=True, roles=["USER"]
    )
