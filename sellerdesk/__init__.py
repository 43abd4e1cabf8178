"""SellerDesk: shared API access layer for the seller management console.

Every surface (web server, desktop app, browser extension) reaches the
commerce platform through this package: a rate-limited request queue,
a pluggable response cache, classified retries and an OAuth2/PKCE flow.
"""

__version__ = "1.0.0"
