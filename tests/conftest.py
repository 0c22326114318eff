import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Configure the broker before any imports that might initialize runtime
os.environ["TEST_MODE"] = "true"
os.environ["BROKER_MEMORY_STORAGE"] = "true"
os.environ.setdefault("BROKER_PUBLIC_URL", "http://broker.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
for _name in (
    "BROKER_REDIS_URL",
    "REDIS_URL",
    "REDISTOGO_URL",
    "REDISCLOUD_URL",
    "BROKER_SQLITE_DB",
    "BROKER_KEYFILES",
    "BROKER_KEYTEXT",
    "BROKER_DOMAIN_OVERRIDES",
    "BROKER_GOOGLE_CLIENT_ID",
    "BROKER_SMTP_SERVER",
):
    os.environ.pop(_name, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portier_broker.service.discovery import DiscoveryFailure, FetchResult  # noqa: E402
from portier_broker.service.runtime import reset_runtime_for_tests  # noqa: E402
from portier_broker.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    def __init__(self, start=None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Records requested URLs; answers with ``result`` or raises ``error``."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise DiscoveryFailure("no route to host")
        return self.result

    @staticmethod
    def webfinger(rel, href, *, max_age=None):
        body = ('{"links": [{"rel": "%s", "href": "%s"}]}' % (rel, href)).encode()
        return FetchResult(status=200, body=body, max_age=max_age)


class RecordingEmail:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    async def send_confirmation(self, to_email, link, code, locale=None):
        self.sent.append({"to": to_email, "link": link, "code": code, "locale": locale})
        return self.ok


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def failing_fetcher():
    return FakeFetcher()


@pytest.fixture
def fetcher_factory():
    return FakeFetcher


@pytest.fixture
def email_outbox():
    return RecordingEmail()


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
