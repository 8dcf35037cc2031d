import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Environment must be in place before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_CLEANUP_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from dancestudio.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Deterministic clock; advance it instead of sleeping."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_clock():
    return FakeClock()


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
