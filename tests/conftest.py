import asyncio
import inspect
import os
import re
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Codes and attempt counters fall back to the in-process implementation
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hackauth.service.notifier import Notifier  # noqa: E402
from hackauth.service.runtime import reset_runtime_for_tests  # noqa: E402

_CODE_PATTERN = re.compile(r"\b(\d{6})\b")
_TOKEN_PATTERN = re.compile(r"token=(\S+)")


class RecordingNotifier(Notifier):
    """Notifier that records messages instead of sending them."""

    def __init__(self):
        super().__init__()
        self.messages = []

    def _dispatch(self, to_email, subject, text_body):
        self.messages.append({"to": to_email, "subject": subject, "body": text_body})

    def last_code(self, to_email=None):
        for message in reversed(self.messages):
            if to_email and message["to"] != to_email:
                continue
            match = _CODE_PATTERN.search(message["body"])
            if match:
                return match.group(1)
        return None

    def last_reset_token(self, to_email=None):
        for message in reversed(self.messages):
            if to_email and message["to"] != to_email:
                continue
            match = _TOKEN_PATTERN.search(message["body"])
            if match:
                return match.group(1)
        return None

    def subjects(self):
        return [message["subject"] for message in self.messages]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def notifier():
    return RecordingNotifier()


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
