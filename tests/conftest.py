import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Deterministic environment before any tenantauth import reads it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.keys import generate_key_pair  # noqa: E402
from tenantauth.service.runtime import (  # noqa: E402
    Runtime,
    reset_runtime_for_tests,
    set_runtime,
)
from tenantauth.storage.memory import MemoryStore  # noqa: E402
from tenantauth.storage.models import AppType  # noqa: E402

DEFAULT_PASSWORD = "Correct-Horse-9!"


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Captures outgoing messages; set ``fail`` to simulate a mail outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, recipient, template, data):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((recipient, template, dict(data)))

    def last(self, template=None):
        for message in reversed(self.sent):
            if template is None or message[1] == template:
                return message
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def key_paths(tmp_path_factory):
    return generate_key_pair(tmp_path_factory.mktemp("keys"))


@pytest.fixture
def settings(key_paths):
    private_path, public_path = key_paths
    # Cheap Argon2 parameters keep the suite fast; production defaults are tested separately
    return Settings(
        jwt_issuer="tenantauth-test",
        private_key_path=str(private_path),
        public_key_path=str(public_path),
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        argon2_parallelism=1,
        redis_url=None,
        test_mode=True,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, memory_store, notifier, clock):
    return set_runtime(
        Runtime(settings, store=memory_store, notifier=notifier, clock=clock)
    )


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


@pytest.fixture
def confidential_app(runtime):
    """(app, client_secret) for a confidential client."""
    return runtime.clients.create_app("Portal", AppType.CONFIDENTIAL)


@pytest.fixture
def public_app(runtime):
    app, _ = runtime.clients.create_app("Mobile", AppType.PUBLIC)
    return app


@pytest.fixture
def make_user(runtime, memory_store):
    def _make(email="alice@example.com", password=DEFAULT_PASSWORD, apps=()):
        return memory_store.create_user(
            email,
            password_hash=runtime.passwords.hash(password),
            opted_in_apps=[app.id for app in apps],
        )

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
