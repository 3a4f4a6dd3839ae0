import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="podauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("PERSIST_STORE_STATE", "false")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from podauth.config import generate_private_key_pem  # noqa: E402
from podauth.service.runtime import reset_runtime_for_tests  # noqa: E402

# One key for the whole run; RSA generation is slow
_SIGNING_KEY = generate_private_key_pem()
os.environ.setdefault("JWT_PRIVATE_KEY", _SIGNING_KEY)


@pytest.fixture(scope="session")
def signing_key() -> str:
    return os.environ["JWT_PRIVATE_KEY"]


@pytest.fixture(scope="session")
def other_signing_key() -> str:
    return generate_private_key_pem()


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
