"""Maps httpx transport failures onto classified NetworkError codes.

The codes mirror the classic socket error names so retry policies can be
configured the same way on every surface.
"""

import socket

import httpx

from sellerdesk.domain.exceptions import NetworkError, RequestTimeoutError

CONNECTION_RESET = "ECONNRESET"
CONNECTION_REFUSED = "ECONNREFUSED"
TIMED_OUT = "ETIMEDOUT"
DNS_FAILURE = "ENOTFOUND"
UNKNOWN = "NETWORK_ERROR"


def _caused_by_dns(error: BaseException) -> bool:
    current = error
    seen = 0
    while current is not None and seen < 10:
        if isinstance(current, socket.gaierror):
            return True
        current = current.__cause__ or current.__context__
        seen += 1
    text = str(error).lower()
    return "name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text


def classify_transport_error(error: httpx.TransportError) -> NetworkError:
    """Converts an httpx transport exception into NetworkError / RequestTimeoutError."""
    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError(f"Request timeout: {error}", code=TIMED_OUT)
    if isinstance(error, httpx.ConnectError):
        if _caused_by_dns(error):
            return NetworkError(f"DNS lookup failed: {error}", code=DNS_FAILURE)
        return NetworkError(f"Connection failed: {error}", code=CONNECTION_REFUSED)
    if isinstance(error, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError, httpx.CloseError)):
        return NetworkError(f"Connection reset: {error}", code=CONNECTION_RESET)
    return NetworkError(f"Network error: {error}", code=UNKNOWN)
