"""Shared fixtures and utilities for Podio client tests."""

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from podio_client.client import PodioClient
from podio_client.oauth.store import MemorySessionStore

API_URL = "https://api.podio.test"

TOKEN_RESPONSE = {"access_token": "a", "refresh_token": "b", "expires_in": 100}

EXPIRED_TOKEN_BODY = {"error": "invalid_token", "error_description": "expired_token"}


# ============================================================================
# Fake Podio API
# ============================================================================


class FakePodioAPI:
    """Scripted Podio API for httpx.MockTransport.

    Token endpoint and API calls are answered from separate queues, unless
    a handler is set for API calls. Every request is recorded.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response] = []
        self.api_responses: list[httpx.Response] = []
        self.api_handler: Callable[[httpx.Request], httpx.Response] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/oauth/token":
            if not self.token_responses:
                return httpx.Response(500, json={"error": "unexpected token request"})
            return self.token_responses.pop(0)

        if self.api_handler is not None:
            return self.api_handler(request)
        if not self.api_responses:
            return httpx.Response(500, json={"error": "unexpected api request"})
        return self.api_responses.pop(0)

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/oauth/token"]

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != "/oauth/token"]


def form_data(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body into a flat dictionary."""
    parsed = parse_qs(request.content.decode("utf-8"))
    return {key: values[0] for key, values in parsed.items()}


def token_body(access_token: str = "a", refresh_token: str = "b", **extra: Any) -> dict[str, Any]:
    """Build a token endpoint response body."""
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": 100,
        **extra,
    }


class FailingSessionStore(MemorySessionStore):
    """Memory store whose writes fail."""

    async def set(self, snapshot: dict[str, Any], auth_type: str) -> None:
        raise OSError("disk full")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_api() -> FakePodioAPI:
    """Create an empty fake API."""
    return FakePodioAPI()


@pytest.fixture
def http_client(fake_api: FakePodioAPI) -> httpx.AsyncClient:
    """Create an httpx client routed to the fake API."""
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_api))


@pytest.fixture
def session_store() -> MemorySessionStore:
    """Create an empty in-memory session store."""
    return MemorySessionStore()


@pytest.fixture
def make_client(http_client: httpx.AsyncClient) -> Callable[..., PodioClient]:
    """Factory for clients wired to the fake API."""

    def factory(auth_type: str = "password", **kwargs: Any) -> PodioClient:
        options: dict[str, Any] = {"auth_type": auth_type, "client_id": "my-app"}
        if auth_type != "client":
            options["client_secret"] = "s3cret"
        return PodioClient(options, api_url=API_URL, http_client=http_client, **kwargs)

    return factory
