import asyncio
import inspect
import os

# Settings are read when the runtime is first built, so configure before imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in tests: rate limits fall back to in-process buckets
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from blockgate.service.auth import ALL_SCOPES  # noqa: E402
from blockgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    from blockgate.app import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def issue_key():
    """Mint a key in the current runtime's store and return request headers for it."""

    def _issue(*scopes, canvas_user_id=None, **kwargs):
        raw_key, _ = get_runtime().authenticator.issue_key(
            "test-key", list(scopes or ALL_SCOPES), **kwargs
        )
        headers = {"X-Service-Key": raw_key}
        if canvas_user_id:
            headers["X-Canvas-User-Id"] = canvas_user_id
        return headers

    return _issue


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
