import asyncio
import inspect
import itertools
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("FIELD_ENCRYPTION_SECRET", "test-field-secret-do-not-use-in-production")
os.environ.setdefault("IDP_ISSUER", "http://testserver")
os.environ.pop("REDIS_URL", None)
os.environ.pop("IDP_JWKS_URL", None)
os.environ.pop("MEMORY_STORE_PATH", None)

# One signing key for the whole session; generating RSA keys per test is slow
_signing_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
os.environ.setdefault(
    "IDP_SIGNING_KEY_PEM",
    _signing_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii"),
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ehrguard.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

DEFAULT_PASSWORD = "Str0ng!Passw0rd"
_user_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    """Create a user with a final (non-temporary) password for ``role``."""

    def _make(
        role: str = "patient",
        *,
        password: str = DEFAULT_PASSWORD,
        force_password_change: bool = False,
        username: str | None = None,
    ):
        n = next(_user_counter)
        username = username or f"{role}{n}"
        user, _ = runtime.identity.create_user(
            username,
            f"{username}@example.com",
            role,
            full_name=f"{role.title()} {n}",
            temporary_password=password,
        )
        if not force_password_change:
            user = runtime.store.set_force_password_change(user.id, False)
        return user

    return _make


@pytest.fixture
def auth_headers(runtime):
    """Bearer headers carrying a freshly issued access token for ``user``."""

    def _headers(user):
        tokens = runtime.identity.issue_tokens(user, include_refresh=False)
        return {"Authorization": f"Bearer {tokens['access_token']}"}

    return _headers


@pytest.fixture
def latest_otp(runtime):
    """Read the live one-time code for a user straight from the store."""

    def _code(user_id: str) -> str:
        challenge = runtime.store.get_active_otp_challenge(user_id)
        assert challenge is not None, "no live OTP challenge"
        return challenge.code

    return _code


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
