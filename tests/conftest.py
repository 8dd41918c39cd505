import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("OIDC_ISSUER", "http://testserver")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")
# Use Redis in tests via SyncRedisCache to avoid async event loop issues
# Falls back to no cache if Redis is not available (via ALLOW_REDIS_FALLBACK_DEV)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.keys import KeyManager  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.tokens import TokenService  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Isolated settings for service-level tests."""
    return Settings(
        shared_fs_root=str(tmp_path),
        oidc_issuer="https://id.example.com",
        frontend_url="https://app.example.com",
        use_memory_store=True,
        test_mode=True,
        google_client_id="google-client.apps.example.com",
        apple_client_id="com.example.web",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), persist=False)


@pytest.fixture
def keys(settings):
    manager = KeyManager(settings.key_dir, key_id=settings.signing_key_id)
    manager.init()
    return manager


@pytest.fixture
def tokens(keys, settings):
    return TokenService(keys, settings)


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
