import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="socialgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)
os.environ.pop("PUSH_SERVICE_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from socialgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from socialgate.service.tokens import TokenAuthority  # noqa: E402
from socialgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path):
    # Each test gets its own persisted state directory
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
        reset_runtime_for_tests()
        yield
        reset_runtime_for_tests()


@pytest.fixture
def tokens():
    return TokenAuthority(TEST_SECRET)


@pytest.fixture
def store(tmp_path, tokens):
    return MemoryStore(tokens, fs_root=str(tmp_path / "store"))


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
