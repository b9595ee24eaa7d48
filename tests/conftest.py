import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment for tests must be in place before any lankaqr import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PIN_PEPPER", "test-pepper")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
TESTS = Path(__file__).resolve().parent
for path in (ROOT, TESTS):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import FakeIdentityProvider  # noqa: E402
from lankaqr.service.runtime import reset_runtime_for_tests  # noqa: E402
from lankaqr.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def runtime():
    """Fresh runtime per test: in-memory store and fake identity provider."""
    rt = reset_runtime_for_tests(store=MemoryStore(), identity_provider=FakeIdentityProvider())
    yield rt


@pytest.fixture
def identity(runtime):
    return runtime.identity_provider


@pytest.fixture
def store(runtime):
    return runtime.store


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
