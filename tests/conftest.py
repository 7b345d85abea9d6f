import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything imports warden.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limits and events in-process for the test run
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("TOKEN_CLEANUP_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.auth import AuthService  # noqa: E402
from warden.service.events import InMemoryEventPublisher  # noqa: E402
from warden.service.passwords import PasswordHasher  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.service.token_lifecycle import TokenLifecycleService  # noqa: E402
from warden.service.tokens import JwtService  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402
from warden.storage.models import utcnow  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced UTC clock for expiry tests."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret-key-with-at-least-32-chars",
        test_mode=True,
        redis_url=None,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock(utcnow())


@pytest.fixture
def services(settings, clock):
    """Wire an isolated store and service graph without the global runtime."""

    store = MemoryStore()
    # Cheap argon2 parameters keep the suite fast; production uses library defaults.
    hasher = PasswordHasher(
        Argon2Hasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )
    jwt = JwtService(settings)
    events = InMemoryEventPublisher()
    lifecycle = TokenLifecycleService(
        store, hasher, settings, publisher=events, clock=clock
    )
    auth = AuthService(store, jwt, hasher, lifecycle, publisher=events)
    return {
        "store": store,
        "hasher": hasher,
        "jwt": jwt,
        "events": events,
        "lifecycle": lifecycle,
        "auth": auth,
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
