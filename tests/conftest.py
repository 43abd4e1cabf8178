import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List

import httpx
import pytest
from typer.testing import CliRunner

from sellerdesk.domain.interfaces.token_provider import TokenProvider
from sellerdesk.domain.models.auth import OAuthTokens
from sellerdesk.domain.models.config import ApiClientConfig, CacheConfig, OAuthConfig, QueueConfig, RetryPolicy

BASE_URL = "https://api.test/v3"
TOKEN_URL = "https://api.test/v3/public/oauth/token"
AUTH_URL = "https://auth.test/oauth/connect"


class StaticTokenProvider(TokenProvider):
    """Returns a fixed token and counts calls."""

    def __init__(self, token: str = "access-token"):
        self.token = token
        self.calls = 0

    async def get_access_token(self) -> str:
        self.calls += 1
        return self.token


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class MockPlatform:
    """Scripted httpx.MockTransport handler.

    Responses are consumed in order per (method, path); the last one repeats.
    Every received request is recorded.
    """

    def __init__(self):
        self.routes: Dict[tuple, List[httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def calls(self, method: str = None, path: str = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not_found", "error_description": "No such route"})
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @staticmethod
    def json(status: int, payload, headers: Dict[str, str] = None) -> httpx.Response:
        return httpx.Response(status, content=json.dumps(payload).encode(), headers={
            "Content-Type": "application/json", **(headers or {})
        })


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def platform() -> MockPlatform:
    return MockPlatform()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def token_provider() -> StaticTokenProvider:
    return StaticTokenProvider()


@pytest.fixture
def make_config() -> Callable[..., ApiClientConfig]:
    """Factory for ApiClientConfig pointing at the mock platform."""

    def _make(**overrides) -> ApiClientConfig:
        values = {
            "api_key": "test-api-key",
            "base_url": BASE_URL,
            "cache": CacheConfig(),
            "retry": RetryPolicy(initial_delay=0.01, max_delay=0.05),
            "queue": QueueConfig(concurrency=5, window=1.0, max_per_window=100),
        }
        values.update(overrides)
        return ApiClientConfig(**values)

    return _make


@pytest.fixture
def oauth_config() -> OAuthConfig:
    return OAuthConfig(
        client_id="client-123",
        redirect_uri="http://localhost:42069/auth/callback",
        scopes=("listings_r", "shops_r"),
        authorization_url=AUTH_URL,
        token_url=TOKEN_URL,
    )


@pytest.fixture
def fresh_tokens() -> OAuthTokens:
    return OAuthTokens(
        access_token="fresh-access",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def stale_tokens() -> OAuthTokens:
    """Tokens that expire inside the refresh buffer."""
    return OAuthTokens(
        access_token="stale-access",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=60),
    )
