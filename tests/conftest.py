import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="accountguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("CHALLENGE_CLEANUP_INTERVAL_SECONDS", "0")
# Rate limits and cooldowns use the in-process fallback
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from accountguard.service.runtime import reset_runtime_for_tests  # noqa: E402


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


class RecordingDelivery:
    """Stand-in outbound channel that keeps every message it is handed."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def send(self, destination, channel, content):
        self.sent.append((destination, channel, content))
        return self.succeed

    def last_code(self) -> str:
        _, _, content = self.sent[-1]
        return "".join(ch for ch in content.text.split(".")[0] if ch.isdigit())


@pytest.fixture
def settings():
    from accountguard.config import Settings

    return Settings.from_env()


@pytest.fixture
def memory_store():
    from accountguard.storage.memory import MemoryStore

    return MemoryStore()


@pytest.fixture
def delivery():
    return RecordingDelivery()


class SlowAtomicCache:
    """Cache stand-in: each call is atomic but suspends like a network round trip."""

    def __init__(self, delay: float = 0.005):
        self.delay = delay
        self.hits = {}

    async def sliding_window_hit(self, key, *, window_ms, max_attempts, lockout_ms, record):
        await asyncio.sleep(self.delay)
        count = self.hits.get(key, 0)
        if count >= max_attempts:
            return False, count, int(time.time() * 1000) + lockout_ms
        if record:
            count += 1
            self.hits[key] = count
        await asyncio.sleep(self.delay)
        return True, count, 0

    async def record_attempt(self, key, *, window_ms):
        await asyncio.sleep(self.delay)
        self.hits[key] = self.hits.get(key, 0) + 1
        return self.hits[key]

    async def reset_rate_limit(self, key):
        await asyncio.sleep(self.delay)
        self.hits.pop(key, None)

    async def acquire_cooldown(self, key, seconds):
        await asyncio.sleep(self.delay)
        return True, 0


@pytest.fixture
def slow_cache():
    return SlowAtomicCache()
