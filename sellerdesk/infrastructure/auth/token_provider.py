"""TokenProvider backed by a TokenStore and the OAuth client.

Returns the stored access token, refreshing it first when it expires within
the buffer. Concurrent callers that all find the token stale share one
refresh request.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sellerdesk.domain.events.api_events import EventHandler, TokenRefreshed, dispatch_event
from sellerdesk.domain.exceptions import NetworkError, TokenError, TokenRefreshFailedError
from sellerdesk.domain.interfaces.token_provider import TokenProvider
from sellerdesk.domain.interfaces.token_store import TokenStore
from sellerdesk.domain.models.auth import OAuthTokens
from sellerdesk.domain.models.common import OwnerId
from sellerdesk.infrastructure.auth.oauth_client import OAuthClient

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_BUFFER_SECONDS = 300


class StoredTokenProvider(TokenProvider):
    """Access tokens for one credential owner."""

    def __init__(
        self,
        owner_id: OwnerId,
        store: TokenStore,
        oauth_client: OAuthClient,
        *,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        event_handler: Optional[EventHandler] = None,
    ):
        """Initializes the provider.

        Args:
            owner_id: Owner whose tokens are served.
            store: Where the owner's tokens live.
            oauth_client: Used for refresh grants.
            expiry_buffer: Refresh when the token expires within this many seconds.
            clock: Returns the current aware UTC datetime (injectable for tests).
            event_handler: Receives TokenRefreshed events.
        """
        self.owner_id = owner_id
        self._store = store
        self._oauth = oauth_client
        self.expiry_buffer = expiry_buffer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._event_handler = event_handler
        self._refresh_task: Optional["asyncio.Task[OAuthTokens]"] = None

    async def get_access_token(self) -> str:
        tokens = await self._store.get(self.owner_id)
        if tokens is None:
            raise TokenError(f"No tokens stored for owner {self.owner_id}. Please log in.")

        if not tokens.expires_within(self.expiry_buffer, self._clock()):
            return tokens.access_token

        if self._refresh_task is None or self._refresh_task.done():
            logger.info(f"Access token for owner {self.owner_id} is about to expire. Refreshing.")
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh(tokens))
        else:
            logger.debug(f"Joining in-flight token refresh for owner {self.owner_id}.")

        # A cancelled waiter must not cancel the refresh the others are waiting on
        refreshed = await asyncio.shield(self._refresh_task)
        return refreshed.access_token

    async def _refresh(self, observed: OAuthTokens) -> OAuthTokens:
        """Refreshes ``observed`` unless another refresh already replaced it.

        A caller may have read the tokens before an earlier refresh saved its
        result. The store is read again here so that caller reuses the rotated
        tokens instead of spending the old refresh token a second time.
        """
        current = await self._store.get(self.owner_id)
        if current is None:
            raise TokenError(f"No tokens stored for owner {self.owner_id}. Please log in.")
        if current.refresh_token != observed.refresh_token:
            logger.debug(f"Tokens for owner {self.owner_id} were already refreshed.")
            if not current.expires_within(self.expiry_buffer, self._clock()):
                return current

        try:
            refreshed = await self._oauth.refresh_access_token(current.refresh_token)
        except TokenRefreshFailedError as e:
            await self._forget_rejected(current.refresh_token)
            raise TokenError(f"Token refresh failed. Please log in again. ({e})") from e
        except NetworkError as e:
            logger.error(f"Token refresh for owner {self.owner_id} failed: {e}")
            raise TokenError(f"Token refresh failed: {e}") from e

        await self._store.save(self.owner_id, refreshed)
        dispatch_event(TokenRefreshed(owner_id=self.owner_id), self._event_handler)
        return refreshed

    async def _forget_rejected(self, refresh_token: str) -> None:
        # Only the rejected credentials are deleted, never ones saved since
        stored = await self._store.get(self.owner_id)
        if stored is None or stored.refresh_token != refresh_token:
            logger.warning(f"Refresh token for owner {self.owner_id} was rejected but has since been replaced.")
            return
        await self._store.delete(self.owner_id)
        logger.warning(f"Refresh token for owner {self.owner_id} was rejected. Stored tokens deleted.")
