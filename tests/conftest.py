import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="lockbox_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep backup code hashing fast
os.environ.setdefault("BACKUP_CODE_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("BACKUP_CODE_HASH_TIME_COST", "1")
os.environ.setdefault("AUDIT_RETRY_BACKOFF_SECONDS", "0")
# Local fallback tier only; Redis-backed paths are exercised with fakes
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lockbox.config import Settings, reset_settings_cache  # noqa: E402
from lockbox.service.runtime import Runtime  # noqa: E402
from lockbox.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET_KEY = os.environ["SECRET_KEY"]
TEST_PASSWORD = "Correct-Horse-42!"


class FakeClock:
    """Mutable UTC clock handed to services in place of ``datetime.now``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        secret_key=TEST_SECRET_KEY,
        backup_code_hash_time_cost=1,
        backup_code_hash_memory_kib=1024,
        audit_retry_backoff_seconds=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key=TEST_SECRET_KEY)


@pytest.fixture
def runtime(settings, memory_store, clock):
    return Runtime(settings, store=memory_store, clock=clock)


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def user(runtime):
    """A user with the standard test password."""
    return asyncio.run(runtime.auth.create_user("alice@example.com", TEST_PASSWORD))


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
