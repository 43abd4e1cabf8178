"""OAuth2 authorization-code flow with PKCE.

Builds the authorization URL, validates the redirect callback against the
session's state, exchanges the code for tokens and refreshes them. The
client keeps at most one authorization session at a time; hosts that
cannot keep the instance alive between redirect and callback persist the
session with export_session()/restore_session().
"""

import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from sellerdesk.domain.exceptions import (
    InvalidStateError,
    NetworkError,
    NoAuthCodeError,
    OAuthFlowError,
    TokenExchangeFailedError,
    TokenRefreshFailedError,
    UserDeniedError,
)
from sellerdesk.domain.models.auth import SESSION_TTL, AuthFlowState, OAuthSession, OAuthTokens, PKCEPair
from sellerdesk.domain.models.config import OAuthConfig
from sellerdesk.infrastructure.resilience.transport import classify_transport_error

logger = logging.getLogger(__name__)

PKCE_VERIFIER_BYTES = 64   # 86 base64url characters
STATE_BYTES = 32           # 43 base64url characters
CODE_CHALLENGE_METHOD = "S256"
TOKEN_TIMEOUT_SECONDS = 30.0


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def code_challenge_for(code_verifier: str) -> str:
    """S256 code challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


class OAuthClient:
    """PKCE authorization-code flow helper for one client registration."""

    def __init__(
        self,
        config: OAuthConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initializes the OAuth client.

        Args:
            config: Client registration and provider endpoints.
            http_client: Shared httpx client; one is created (and owned) if None.
            clock: Returns the current aware UTC datetime (injectable for tests).

        Raises:
            OAuthFlowError: If no client id is configured.
        """
        if not config.client_id:
            raise OAuthFlowError("Missing OAuth client credentials.")
        self.config = config
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=TOKEN_TIMEOUT_SECONDS)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._pkce: Optional[PKCEPair] = None
        self._state: Optional[str] = None
        self._session_created_at: Optional[datetime] = None
        self._redirect_uri: Optional[str] = None
        self.flow_state = AuthFlowState.INIT

    # --- PKCE and state ---

    def generate_pkce(self) -> PKCEPair:
        """Generates and remembers a fresh code verifier and its S256 challenge."""
        verifier = _b64url(secrets.token_bytes(PKCE_VERIFIER_BYTES))
        self._pkce = PKCEPair(code_verifier=verifier, code_challenge=code_challenge_for(verifier))
        self._session_created_at = self._clock()
        self.flow_state = AuthFlowState.PKCE_GENERATED
        return self._pkce

    def generate_state(self) -> str:
        """Generates and remembers a fresh CSRF state value."""
        self._state = _b64url(secrets.token_bytes(STATE_BYTES))
        self._session_created_at = self._clock()
        return self._state

    def get_authorization_url(
        self,
        state: Optional[str] = None,
        scopes: Optional[Sequence[str]] = None,
        redirect_uri: Optional[str] = None,
    ) -> str:
        """Builds the provider authorization URL for a new session.

        Args:
            state: Caller-generated state; a new one is generated if None.
            scopes: Requested scopes (defaults to the configured scopes).
            redirect_uri: Overrides the configured redirect URI. The code
                exchange of this session sends the same value.
        """
        if state is not None:
            self._state = state
            self._session_created_at = self._clock()
        else:
            self.generate_state()
        if self._pkce is None:
            self.generate_pkce()
        self._redirect_uri = redirect_uri or self.config.redirect_uri

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(scopes if scopes is not None else self.config.scopes),
            "state": self._state,
            "code_challenge": self._pkce.code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        self.flow_state = AuthFlowState.AUTH_URL_ISSUED
        return f"{self.config.authorization_url}?{urlencode(params)}"

    # --- Session persistence ---

    def export_session(self) -> Optional[OAuthSession]:
        """Returns the pending session so a stateless host can persist it."""
        if self._state is None or self._pkce is None or self._session_created_at is None:
            return None
        return OAuthSession(
            state=self._state,
            code_verifier=self._pkce.code_verifier,
            code_challenge=self._pkce.code_challenge,
            created_at=self._session_created_at,
            redirect_uri=self._redirect_uri,
        )

    def restore_session(self, session: OAuthSession) -> None:
        self._state = session.state
        self._pkce = PKCEPair(code_verifier=session.code_verifier, code_challenge=session.code_challenge)
        self._session_created_at = session.created_at
        self._redirect_uri = session.redirect_uri
        self.flow_state = AuthFlowState.AUTH_URL_ISSUED

    # --- Callback ---

    def validate_state(self, received: Optional[str]) -> bool:
        """Constant-time comparison against the stored state; False if none is stored."""
        if not self._state or not received:
            return False
        return hmac.compare_digest(self._state.encode("utf-8"), received.encode("utf-8"))

    def _session_expired(self) -> bool:
        if self._session_created_at is None:
            return True
        return self._clock() - self._session_created_at > SESSION_TTL

    def parse_authorization_response(self, query_params: Union[str, Mapping[str, Any]]) -> Dict[str, str]:
        """Validates the redirect callback parameters.

        Args:
            query_params: The callback query string, full redirect URL, or a
                mapping of parameter names to values.

        Returns:
            ``{"code": ..., "state": ...}``

        Raises:
            UserDeniedError: The user declined (``error=access_denied``).
            OAuthFlowError: Any other provider error.
            NoAuthCodeError: No code was returned.
            InvalidStateError: State missing, unknown, mismatched or expired.
        """
        params = _normalize_params(query_params)
        error = params.get("error")
        if error:
            if error == "access_denied":
                raise UserDeniedError()
            raise OAuthFlowError(params.get("error_description") or error)

        code = params.get("code")
        if not code:
            raise NoAuthCodeError()

        state = params.get("state")
        if not state or not self.validate_state(state) or self._session_expired():
            logger.warning("Rejected authorization callback with invalid or expired state.")
            raise InvalidStateError()

        # The state is single-use; the verifier stays for the code exchange.
        self._state = None
        self.flow_state = AuthFlowState.CALLBACK_RECEIVED
        return {"code": code, "state": state}

    # --- Token endpoint ---

    async def exchange_code_for_tokens(self, code: str, code_verifier: Optional[str] = None) -> OAuthTokens:
        """Exchanges an authorization code for tokens.

        Raises:
            OAuthFlowError: No code verifier is available.
            TokenExchangeFailedError: The provider rejected the exchange.
            NetworkError: The token endpoint could not be reached.
        """
        verifier = code_verifier or (self._pkce.code_verifier if self._pkce else None)
        if not verifier:
            raise OAuthFlowError("Code verifier is required for PKCE flow.")

        form = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "redirect_uri": self._redirect_uri or self.config.redirect_uri,
            "code": code,
            "code_verifier": verifier,
        }
        status, payload = await self._post_token_request(form)
        if status >= 400 or "access_token" not in payload:
            error = payload.get("error")
            logger.error(f"Token exchange failed: HTTP {status}, error={error}")
            raise TokenExchangeFailedError(
                payload.get("error_description") or "Failed to exchange authorization code for tokens.",
                error=error,
            )

        self._pkce = None
        self._session_created_at = None
        self._redirect_uri = None
        self.flow_state = AuthFlowState.AUTHENTICATED
        logger.info("Authorization code exchanged for tokens.")
        return OAuthTokens.from_token_response(payload, self._clock())

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Obtains new tokens with a refresh grant.

        Raises:
            TokenRefreshFailedError: The provider rejected the refresh token.
            NetworkError: The token endpoint could not be reached.
        """
        self.flow_state = AuthFlowState.REFRESHING
        form = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": refresh_token,
        }
        try:
            status, payload = await self._post_token_request(form)
        except NetworkError:
            self.flow_state = AuthFlowState.AUTHENTICATED
            raise
        if status >= 400 or "access_token" not in payload:
            error = payload.get("error")
            logger.error(f"Token refresh failed: HTTP {status}, error={error}")
            self.flow_state = AuthFlowState.REVOKED
            raise TokenRefreshFailedError(
                payload.get("error_description") or "Failed to refresh access token.",
                error=error,
            )

        self.flow_state = AuthFlowState.AUTHENTICATED
        tokens = OAuthTokens.from_token_response(payload, self._clock())
        if not tokens.refresh_token:
            # Providers may omit the refresh token when it is not rotated
            tokens = OAuthTokens(
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                expires_at=tokens.expires_at,
                token_type=tokens.token_type,
                scope=tokens.scope,
            )
        return tokens

    async def _post_token_request(self, form: Mapping[str, str]) -> "tuple[int, Dict[str, Any]]":
        try:
            response = await self._http.post(
                self.config.token_url,
                data=dict(form),
                headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise classify_transport_error(e) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return response.status_code, payload

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def _normalize_params(query_params: Union[str, Mapping[str, Any]]) -> Dict[str, str]:
    if isinstance(query_params, str):
        query = urlsplit(query_params).query if "?" in query_params else query_params
        parsed = parse_qs(query.lstrip("?"), keep_blank_values=False)
        return {k: v[0] for k, v in parsed.items() if v}
    normalized: Dict[str, str] = {}
    for key, value in query_params.items():
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is not None:
            normalized[key] = str(value)
    return normalized
