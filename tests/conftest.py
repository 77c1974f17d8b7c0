import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sentinelid_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Per-process throttles so every test starts with full buckets
os.environ["REDIS_URL"] = ""
# TestClient talks plain http; secure cookies would never be sent back
os.environ["COOKIE_SECURE"] = "false"
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
for _smtp_var in ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "EMAIL_FROM_ADDRESS"):
    os.environ.pop(_smtp_var, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sentinelid.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from sentinelid.storage.models import NewUser  # noqa: E402

DEFAULT_PASSWORD = "Str0ng!Passw0rd"


def _fresh_runtime():
    # Each test starts from an empty memory store
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    state_file.unlink(missing_ok=True)
    return reset_runtime_for_tests()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _fresh_runtime()
    yield
    _fresh_runtime()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def sent_codes(runtime, monkeypatch):
    """Capture outgoing one-time codes as (email, purpose) -> latest code."""
    outbox = {}

    def _capture(to_email, code, purpose, *, expires_minutes=5):
        outbox[(to_email, purpose)] = code

    monkeypatch.setattr(runtime.email, "send_otp", _capture)
    return outbox


@pytest.fixture
def make_user(runtime):
    """Create an account directly in the store; returns (user, totp_secret or None)."""

    def _make(
        role="personnel",
        identifier="IC-123456",
        email="officer@example.mil",
        password=DEFAULT_PASSWORD,
        mfa_method=None,
        full_name="Test Officer",
        mobile="+911234567890",
    ):
        method = mfa_method or ("email" if role in {"family", "veteran"} else "totp")
        secret = runtime.totp.generate_secret() if method == "totp" else None
        user = runtime.store.create_user(
            NewUser(
                full_name=full_name,
                email=email,
                mobile=mobile,
                identifier=identifier,
                role=role,
                password_hash=runtime.passwords.hash(password),
                mfa_method=method,
                totp_secret=runtime.cipher.encrypt(secret) if secret else None,
            )
        )
        return user, secret

    return _make


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
