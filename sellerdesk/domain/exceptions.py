"""Error taxonomy for the API access layer.

Every failure that leaves the access layer is one of these classes, never a
raw transport exception. CacheError is the exception: it only ever travels
inside a CacheOutcome and is never raised to callers.
"""

from typing import Any, Optional


class SellerDeskError(Exception):
    """Base exception for all library errors."""


class ConfigurationError(SellerDeskError):
    """Raised when required configuration or credentials are missing or invalid."""


class QueueConfigurationError(ConfigurationError):
    """Raised synchronously when the request queue is misconfigured or misused."""


# --- Transport ---

class NetworkError(SellerDeskError):
    """No response was received from the platform.

    Attributes:
        code: Classified transport code (e.g. 'ECONNRESET', 'ENOTFOUND').
    """

    def __init__(self, message: str, *, code: str = "NETWORK_ERROR") -> None:
        super().__init__(message)
        self.code = code


class RequestTimeoutError(NetworkError):
    """The request did not complete within its timeout."""

    def __init__(self, message: str = "Request timeout", *, code: str = "ETIMEDOUT") -> None:
        super().__init__(message, code=code)


# --- Platform responses ---

class ApiError(SellerDeskError):
    """A non-2xx response from the platform, classified.

    Attributes:
        code: Error code reported by the platform (or 'API_ERROR').
        description: Human readable description (falls back to the HTTP reason).
        http_status: HTTP status code of the response.
        details: Parsed error body, if any.
    """

    def __init__(
        self,
        code: str,
        description: str,
        *,
        http_status: Optional[int] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(f"{code}: {description}" if description else code)
        self.code = code
        self.description = description
        self.http_status = http_status
        self.details = details


class RateLimitError(ApiError):
    """HTTP 429 from the platform; carries the server's retry-after (seconds)."""

    def __init__(
        self,
        description: str = "Rate limit exceeded",
        *,
        retry_after: Optional[float] = None,
        code: str = "RATE_LIMITED",
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(code, description, http_status=429, details=details)
        self.retry_after = retry_after


# --- Credentials ---

class TokenError(SellerDeskError):
    """A bearer credential is missing, invalid, expired or could not be refreshed."""


class OAuthFlowError(SellerDeskError):
    """The OAuth authorization-code flow failed."""


class UserDeniedError(OAuthFlowError):
    """The user declined the authorization request."""

    def __init__(self, message: str = "User denied authorization.") -> None:
        super().__init__(message)


class InvalidStateError(OAuthFlowError):
    """The callback state is absent, unknown or expired. Possible CSRF attack."""

    def __init__(self, message: str = "Invalid state parameter. Possible CSRF attack.") -> None:
        super().__init__(message)


class NoAuthCodeError(OAuthFlowError):
    """The callback did not carry an authorization code."""

    def __init__(self, message: str = "No authorization code received.") -> None:
        super().__init__(message)


class TokenExchangeFailedError(OAuthFlowError):
    """The provider rejected the authorization-code exchange."""

    def __init__(self, message: str = "Failed to exchange authorization code for tokens.", *, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.error = error


class TokenRefreshFailedError(OAuthFlowError):
    """The provider rejected the refresh token."""

    def __init__(self, message: str = "Failed to refresh access token.", *, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.error = error


# --- Cache (internal) ---

class CacheError(SellerDeskError):
    """A cache backend failed. Only ever reported through CacheOutcome."""
