import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="showauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.setdefault("HIBP_CHECK_ENABLED", "false")
os.environ.setdefault("CLI_CALLBACK_BACKEND", "memory")
# Route tests share one client address; tests/test_endpoint_rate_limits.py lowers these
os.environ.setdefault("AUTH_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("PASSKEY_RATE_LIMIT_PER_MINUTE", "1000")
# Tests never talk to Redis; the memory registry and state map are exercised instead
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from showauth.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Velvet-Underground-1967"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from showauth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from showauth.app import app

    return TestClient(app)


@pytest.fixture
def password_account(runtime):
    """A verified password account created through the service layer."""
    account = runtime.auth.register("fan@example.com", STRONG_PASSWORD, first_name="Jo")
    return runtime.store.set_email_verified(account.id, True)


class FakeEmailSender:
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self, configured: bool = True, succeed: bool = True):
        self.configured = configured
        self.succeed = succeed
        self.sent: list[tuple[str, str, dict]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def _record(self, kind: str, to_email: str, token: str, **extra) -> bool:
        self.sent.append((kind, to_email, {"token": token, **extra}))
        return self.succeed

    def send_verification_email(self, to_email: str, token: str) -> bool:
        return self._record("verification", to_email, token)

    def send_magic_link_email(self, to_email: str, token: str) -> bool:
        return self._record("magic_link", to_email, token)

    def send_recovery_email(self, to_email: str, token: str, days_remaining: int) -> bool:
        return self._record("recovery", to_email, token, days_remaining=days_remaining)


@pytest.fixture
def fake_email(runtime):
    sender = FakeEmailSender()
    runtime.email = sender
    runtime.lifecycle.email = sender
    return sender


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
