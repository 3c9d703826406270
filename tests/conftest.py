import asyncio
import inspect
import os
import tempfile
from pathlib import Path

# Environment must be in place before bloggerhub.app reads settings at import
_test_tmp_dir = tempfile.mkdtemp(prefix="bloggerhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from bloggerhub.service.runtime import reset_runtime_for_tests  # noqa: E402


def _clear_memory_snapshot() -> None:
    snapshot = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    snapshot.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_snapshot()
    reset_runtime_for_tests()
    yield
    _clear_memory_snapshot()
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
