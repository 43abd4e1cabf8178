"""Value objects for the OAuth2 authorization-code (PKCE) flow."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# An authorization session is only honoured for this long after it was created.
SESSION_TTL = timedelta(minutes=10)


class AuthFlowState(str, Enum):
    """States of the authorization flow as seen by one OAuthClient."""
    INIT = "init"
    PKCE_GENERATED = "pkce_generated"
    AUTH_URL_ISSUED = "auth_url_issued"
    CALLBACK_RECEIVED = "callback_received"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str


@dataclass(frozen=True)
class OAuthSession:
    """Ephemeral, caller-owned record of one authorization attempt."""
    state: str
    code_verifier: str
    code_challenge: str
    created_at: datetime
    redirect_uri: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now - self.created_at > SESSION_TTL


@dataclass(frozen=True)
class OAuthTokens:
    """Tokens issued by the provider. Persisted only by the host's TokenStore."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    scope: str = ""

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True if the access token expires within ``seconds`` from ``now``."""
        current = now or datetime.now(timezone.utc)
        return self.expires_at - current < timedelta(seconds=seconds)

    def to_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OAuthTokens":
        expires_at = datetime.fromisoformat(str(data["expires_at"]))
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_at=expires_at,
            token_type=str(data.get("token_type") or "Bearer"),
            scope=str(data.get("scope") or ""),
        )

    @classmethod
    def from_token_response(cls, payload: Mapping[str, Any], now: datetime) -> "OAuthTokens":
        """Builds tokens from a provider token-endpoint JSON payload."""
        return cls(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=now + timedelta(seconds=int(payload.get("expires_in") or 0)),
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=str(payload.get("scope") or ""),
        )
