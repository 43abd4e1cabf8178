import base64
import hashlib
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest

from sellerdesk.domain.exceptions import (
    InvalidStateError,
    NetworkError,
    NoAuthCodeError,
    OAuthFlowError,
    TokenExchangeFailedError,
    TokenRefreshFailedError,
    UserDeniedError,
)
from sellerdesk.domain.models.auth import AuthFlowState, OAuthSession
from sellerdesk.domain.models.config import OAuthConfig
from sellerdesk.infrastructure.auth.oauth_client import OAuthClient, code_challenge_for

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TokenEndpoint:
    """Fake token endpoint that only accepts the verifier matching the issued challenge."""

    def __init__(self):
        self.expected_challenge = None
        self.forms = []
        self.refresh_status = 200
        self.refresh_payload = {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
            "token_type": "Bearer",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.forms.append(form)
        if form["grant_type"] == "authorization_code":
            if code_challenge_for(form["code_verifier"]) != self.expected_challenge:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "code_verifier mismatch"})
            return httpx.Response(200, json={
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "expires_in": 3600,
                "token_type": "Bearer",
            })
        return httpx.Response(self.refresh_status, json=self.refresh_payload)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest.fixture
async def client(oauth_config, endpoint, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    oauth = OAuthClient(oauth_config, http_client=http, clock=clock)
    yield oauth
    await http.aclose()


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_requires_client_id(oauth_config):
    with pytest.raises(OAuthFlowError):
        OAuthClient(OAuthConfig(client_id=""))


async def test_pkce_pair_is_s256(client):
    pair = client.generate_pkce()
    digest = hashlib.sha256(pair.code_verifier.encode()).digest()
    assert pair.code_challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    assert "=" not in pair.code_verifier
    assert len(pair.code_verifier) >= 43
    assert client.flow_state is AuthFlowState.PKCE_GENERATED


async def test_pkce_and_state_are_unique_across_calls(client):
    verifiers = {client.generate_pkce().code_verifier for _ in range(1000)}
    states = {client.generate_state() for _ in range(1000)}
    assert len(verifiers) == 1000
    assert len(states) == 1000
    assert all(len(s) >= 20 for s in states)


async def test_authorization_url_parameters(client, oauth_config):
    url = client.get_authorization_url(state="my-state")
    query = _query(url)

    assert url.startswith(oauth_config.authorization_url + "?")
    assert query["response_type"] == "code"
    assert query["client_id"] == "client-123"
    assert query["redirect_uri"] == oauth_config.redirect_uri
    assert query["scope"] == "listings_r shops_r"
    assert query["state"] == "my-state"
    assert query["code_challenge_method"] == "S256"
    assert query["code_challenge"] == client.export_session().code_challenge
    assert client.flow_state is AuthFlowState.AUTH_URL_ISSUED


async def test_full_flow_with_matching_verifier(client, endpoint):
    url = client.get_authorization_url()
    query = _query(url)
    endpoint.expected_challenge = query["code_challenge"]
    verifier = client.export_session().code_verifier

    callback = client.parse_authorization_response(
        f"http://localhost:42069/auth/callback?{urlencode({'code': 'abc', 'state': query['state']})}"
    )
    tokens = await client.exchange_code_for_tokens(callback["code"], verifier)

    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_at == NOW + timedelta(seconds=3600)
    assert client.flow_state is AuthFlowState.AUTHENTICATED
    assert endpoint.forms[0]["code"] == "abc"
    assert endpoint.forms[0]["grant_type"] == "authorization_code"


async def test_exchange_with_different_verifier_fails(client, endpoint):
    url = client.get_authorization_url()
    endpoint.expected_challenge = _query(url)["code_challenge"]
    client.parse_authorization_response({"code": "abc", "state": _query(url)["state"]})

    with pytest.raises(TokenExchangeFailedError) as excinfo:
        await client.exchange_code_for_tokens("abc", "some-other-verifier")
    assert excinfo.value.error == "invalid_grant"


async def test_exchange_without_verifier_fails(client):
    with pytest.raises(OAuthFlowError):
        await client.exchange_code_for_tokens("abc")


async def test_state_never_issued_is_rejected(client):
    client.get_authorization_url()
    with pytest.raises(InvalidStateError):
        client.parse_authorization_response({"code": "abc", "state": "forged-state"})


async def test_state_is_single_use(client):
    url = client.get_authorization_url()
    params = {"code": "abc", "state": _query(url)["state"]}
    client.parse_authorization_response(params)
    with pytest.raises(InvalidStateError):
        client.parse_authorization_response(params)


async def test_expired_session_is_rejected(client, clock):
    url = client.get_authorization_url()
    clock.now = NOW + timedelta(minutes=11)
    with pytest.raises(InvalidStateError):
        client.parse_authorization_response({"code": "abc", "state": _query(url)["state"]})


async def test_callback_errors(client):
    client.get_authorization_url(state="s")
    with pytest.raises(UserDeniedError):
        client.parse_authorization_response("error=access_denied&state=s")
    with pytest.raises(OAuthFlowError, match="server exploded"):
        client.parse_authorization_response({"error": "server_error", "error_description": "server exploded"})
    with pytest.raises(NoAuthCodeError):
        client.parse_authorization_response({"state": "s"})


async def test_validate_state_without_session_is_false(client):
    assert client.validate_state("anything") is False
    client.generate_state()
    assert client.validate_state(None) is False


async def test_session_round_trips_between_instances(oauth_config, endpoint, clock):
    """A stateless host can restore the session in a fresh client for the callback."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    first = OAuthClient(oauth_config, http_client=http, clock=clock)
    url = first.get_authorization_url()
    endpoint.expected_challenge = _query(url)["code_challenge"]
    session = first.export_session()
    assert isinstance(session, OAuthSession)

    second = OAuthClient(oauth_config, http_client=http, clock=clock)
    second.restore_session(session)
    callback = second.parse_authorization_response({"code": "abc", "state": session.state})
    tokens = await second.exchange_code_for_tokens(callback["code"])

    assert tokens.access_token == "access-1"
    await http.aclose()


async def test_exchange_sends_the_redirect_uri_of_the_authorization_url(client, endpoint, oauth_config):
    url = client.get_authorization_url(redirect_uri="http://127.0.0.1:5000/cb")
    query = _query(url)
    endpoint.expected_challenge = query["code_challenge"]
    client.parse_authorization_response({"code": "abc", "state": query["state"]})

    await client.exchange_code_for_tokens("abc")

    assert query["redirect_uri"] == "http://127.0.0.1:5000/cb"
    assert endpoint.forms[0]["redirect_uri"] == "http://127.0.0.1:5000/cb"

    # The next session falls back to the configured value
    next_url = client.get_authorization_url()
    assert _query(next_url)["redirect_uri"] == oauth_config.redirect_uri


async def test_redirect_uri_override_survives_session_restore(oauth_config, endpoint, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    first = OAuthClient(oauth_config, http_client=http, clock=clock)
    url = first.get_authorization_url(redirect_uri="https://app.test/oauth/done")
    endpoint.expected_challenge = _query(url)["code_challenge"]
    session = first.export_session()

    second = OAuthClient(oauth_config, http_client=http, clock=clock)
    second.restore_session(session)
    second.parse_authorization_response({"code": "abc", "state": session.state})
    await second.exchange_code_for_tokens("abc")

    assert session.redirect_uri == "https://app.test/oauth/done"
    assert endpoint.forms[0]["redirect_uri"] == "https://app.test/oauth/done"
    await http.aclose()


async def test_refresh_success_and_rotation(client, endpoint):
    tokens = await client.refresh_access_token("refresh-1")
    assert tokens.access_token == "access-2"
    assert tokens.refresh_token == "refresh-2"
    assert endpoint.forms[-1] == {"grant_type": "refresh_token", "client_id": "client-123", "refresh_token": "refresh-1"}
    assert client.flow_state is AuthFlowState.AUTHENTICATED


async def test_refresh_keeps_old_refresh_token_when_not_rotated(client, endpoint):
    endpoint.refresh_payload = {"access_token": "access-3", "expires_in": 60}
    tokens = await client.refresh_access_token("refresh-1")
    assert tokens.refresh_token == "refresh-1"


async def test_refresh_rejection_revokes(client, endpoint):
    endpoint.refresh_status = 400
    endpoint.refresh_payload = {"error": "invalid_token", "error_description": "refresh token revoked"}

    with pytest.raises(TokenRefreshFailedError) as excinfo:
        await client.refresh_access_token("refresh-1")

    assert excinfo.value.error == "invalid_token"
    assert client.flow_state is AuthFlowState.REVOKED


async def test_refresh_network_failure_is_network_error(oauth_config, clock):
    def unreachable(request):
        raise httpx.ConnectError("connection refused")

    http = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
    client = OAuthClient(oauth_config, http_client=http, clock=clock)
    with pytest.raises(NetworkError):
        await client.refresh_access_token("refresh-1")
    assert client.flow_state is AuthFlowState.AUTHENTICATED
    await http.aclose()
