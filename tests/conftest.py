"""Shared fixtures: a recording fake upstream behind httpx.MockTransport."""

import httpx
import pytest
from fastapi.testclient import TestClient

from openai_proxy import ProxyConfig, create_app

UPSTREAM_URL = "https://api.example.test"
API_KEY = "sk-real"


class FakeUpstream:
    """Records every request and answers through a swappable handler."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, json={"ok": True})

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def config():
    return ProxyConfig(upstream_base_url=UPSTREAM_URL, upstream_api_key=API_KEY)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def upstream_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(config, upstream_client):
    """TestClient for a proxy wired to the fake upstream."""
    app = create_app(config, client=upstream_client)
    with TestClient(app) as test_client:
        yield test_client
