import os

# Must be set before the application module is imported.
os.environ.setdefault("KV_BACKEND", "memory")

from itertools import count
from unittest.mock import MagicMock

import pytest
from requests.structures import CaseInsensitiveDict

from clashub.app import create_app
from clashub.common.io import MemoryKVStore
from clashub.services.auth_service import AuthService
from clashub.services.kv_service import KVService

TOKEN = "secret-token"


class FakeUpstream:
    """Stands in for a streamed ``requests.Response``."""

    def __init__(self, status_code=200, reason="OK", body=b"", headers=None):
        self.status_code = status_code
        self.reason = reason
        self.content = body
        self.text = body.decode("utf-8", errors="replace")
        self.headers = CaseInsensitiveDict(headers or {})
        self.raw = MagicMock()
        self.raw.read.return_value = body
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def clock():
    ticks = count(1)

    def now_iso():
        return f"2026-01-01T00:00:{next(ticks):02d}.000Z"

    return now_iso


@pytest.fixture
def kv_service(store, clock):
    return KVService(store, now_iso=clock)


@pytest.fixture
def auth_service(kv_service):
    return AuthService(kv_service)


@pytest.fixture
def app(store):
    application = create_app(store)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def authed_store(store):
    KVService(store).set_auth_token(TOKEN)
    return store
