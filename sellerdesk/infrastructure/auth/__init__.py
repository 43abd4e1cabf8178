"""OAuth2/PKCE flow helper, token providers and token stores.
Bounded Context: Authorization
"""
