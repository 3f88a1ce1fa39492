import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before junicore.config/logging are imported
_test_tmp_dir = tempfile.mkdtemp(prefix="junicore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CHECKR_WEBHOOK_SECRET", "checkr_test_secret")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "64")
# No Redis in unit tests; the runtime falls back to per-process rate limits
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from junicore.app import create_app  # noqa: E402
from junicore.config import Settings, reset_settings_cache  # noqa: E402
from junicore.service.notifications import RecordingNotifier  # noqa: E402
from junicore.service.passwords import CredentialStore  # noqa: E402
from junicore.service.runtime import Runtime  # noqa: E402
from junicore.storage.memory import MemoryStore  # noqa: E402
from junicore.storage.models import Role, TokenPurpose  # noqa: E402

ACCESS_SECRET = "access-secret-for-tests-only-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-only-0123456789abcdef"
STRIPE_SECRET = "whsec_test_secret"
CHECKR_SECRET = "checkr_test_secret"
PASSWORD = "CorrectHorse9"


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        stripe_webhook_secret=STRIPE_SECRET,
        checkr_webhook_secret=CHECKR_SECRET,
        password_hash_time_cost=1,
        password_hash_memory_kib=64,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def credentials(settings):
    return CredentialStore(
        time_cost=settings.password_hash_time_cost,
        memory_cost=settings.password_hash_memory_kib,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier):
    return Runtime(settings, store=memory_store, notifier=notifier)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def verified_user(runtime, notifier):
    """A FAMILY principal that has completed email verification."""
    principal = runtime.auth.register("family@example.com", PASSWORD, Role.FAMILY)
    token = notifier.last_token(principal.id, TokenPurpose.EMAIL_VERIFY)
    return runtime.single_use.verify_email(token)


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
