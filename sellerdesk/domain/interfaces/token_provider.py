"""Interface for the host-supplied bearer token source."""

import abc


class TokenProvider(abc.ABC):
    """Supplies a current, valid access token to the API client.

    Implementations differ per host (server-side per-user record, extension
    storage, encrypted desktop store) but must all refresh before returning
    a token that is about to expire, and must collapse concurrent refreshes
    for the same credential owner into one.
    """

    @abc.abstractmethod
    async def get_access_token(self) -> str:
        """Returns an access token.

        Raises:
            TokenError: If no valid token is available and refreshing failed.
        """
