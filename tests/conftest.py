import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.pop("SHARED_FS_ROOT", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bankcore.config import Settings  # noqa: E402
from bankcore.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self):
        self.welcome: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.reset_successes: list[str] = []

    def send_welcome(self, to_email, username):
        self.welcome.append((to_email, username))
        return True

    def send_password_reset(self, to_email, reset_url, ttl_minutes=60):
        self.resets.append((to_email, reset_url))
        return True

    def send_reset_success(self, to_email):
        self.reset_successes.append(to_email)
        return True


class FakeClock:
    """Callable clock returning a settable epoch timestamp."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_settings():
    def _make(**overrides):
        values = {"jwt_secret": TEST_JWT_SECRET}
        values.update(overrides)
        return Settings(**values)

    return _make


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
