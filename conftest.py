"""Shared fixtures: in-memory store, fake fetch client, vault and dispatcher."""

import pytest

from function_server.config import Settings
from function_server.dispatcher import Dispatcher
from function_server.messages import Request
from store_clients.fetch_client import FetchResult
from store_clients.kv_store import InMemoryKeyValueStore
from store_clients.vault import EnvironmentVault

KITTY_IMAGE_URL = "https://cdn2.thecatapi.com/images/abc.jpg"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetchClient:
    """Records fetch calls and returns a canned result or raises a canned error"""

    def __init__(self, result=None, error=None):
        self.result = result or FetchResult(url=KITTY_IMAGE_URL, status=200)
        self.error = error
        self.calls = []

    async def fetch(self, url, method="GET", headers=None):
        self.calls.append({"url": url, "method": method, "headers": dict(headers or {})})
        if self.error is not None:
            raise self.error
        return self.result


def make_request(method="GET", body="", headers=None, **params):
    return Request(method=method, params=params, body=body, headers=headers or {})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(timeout_seconds=1.0, clock=clock)


@pytest.fixture
def fetch_client():
    return FakeFetchClient()


@pytest.fixture
def vault():
    return EnvironmentVault(environ={"VAULT_SECRET_API_KEY": "s3cret"})


@pytest.fixture
def settings():
    return Settings(demo_mode=True)


@pytest.fixture
def dispatcher(store, fetch_client, vault, settings):
    return Dispatcher(store=store, fetch_client=fetch_client, vault=vault, settings=settings)
