"""
Bearer token handling.

The client attaches the current token to every call. When a call comes back
401, ``TokenRefresher.refresh`` swaps the refresh token for a new access
token. Only one refresh runs at a time: callers that hit 401 while a refresh
is in flight wait for that same refresh and replay with its token. If the
refresh fails every waiter fails with it and all tokens are cleared.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

RefreshCall = Callable[[str], Awaitable[tuple[str, str | None]]]


class TokenProvider(Protocol):
    """Where the client reads and stores its tokens."""

    def get_token(self) -> str | None: ...

    def get_refresh_token(self) -> str | None: ...

    def set_tokens(self, token: str, refresh_token: str | None = None) -> None: ...

    def clear_tokens(self) -> None: ...


class InMemoryTokenProvider:
    """Token provider holding tokens for the lifetime of the process."""

    def __init__(self, token: str | None = None, refresh_token: str | None = None) -> None:
        self._token = token
        self._refresh_token = refresh_token

    def get_token(self) -> str | None:
        return self._token

    def get_refresh_token(self) -> str | None:
        return self._refresh_token

    def set_tokens(self, token: str, refresh_token: str | None = None) -> None:
        self._token = token
        # Keep the existing refresh token when the server does not rotate it.
        if refresh_token:
            self._refresh_token = refresh_token

    def clear_tokens(self) -> None:
        self._token = None
        self._refresh_token = None


def bearer_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


class TokenRefresher:
    """Single-flight access token refresh."""

    def __init__(
        self,
        tokens: TokenProvider,
        refresh_call: RefreshCall,
        on_failure: Callable[[AuthenticationError], None] | None = None,
    ) -> None:
        """Initialize the refresher.

        Args:
            tokens: Token storage
            refresh_call: Exchanges a refresh token for (token, new refresh token)
            on_failure: Called once per failed refresh, after tokens are cleared
        """
        self.tokens = tokens
        self._refresh_call = refresh_call
        self._on_failure = on_failure
        self._inflight: asyncio.Future[str] | None = None
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    async def refresh(self, stale_token: str | None = None) -> str:
        """Get a fresh access token.

        Args:
            stale_token: The token the failed call was sent with. If the
                current token already differs, someone refreshed in the
                meantime and that token is returned without a new refresh.

        Returns:
            The new access token

        Raises:
            AuthenticationError: If the refresh failed
        """
        current = self.tokens.get_token()
        if stale_token is not None and current is not None and current != stale_token:
            return current

        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        inflight: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight = inflight
        self.refresh_count += 1
        try:
            refresh_token = self.tokens.get_refresh_token()
            if not refresh_token:
                raise AuthenticationError("no refresh token available")

            token, new_refresh_token = await self._refresh_call(refresh_token)
            self.tokens.set_tokens(token, new_refresh_token)
            logger.info("Access token refreshed")
            inflight.set_result(token)
            return token
        except asyncio.CancelledError:
            inflight.cancel()
            raise
        except Exception as e:
            error = e if isinstance(e, AuthenticationError) else AuthenticationError("token refresh failed", e)
            self.tokens.clear_tokens()
            logger.warning("Token refresh failed, tokens cleared: %s", error.reason)

            inflight.set_exception(error)
            # Waiters re-raise it; mark it retrieved for the no-waiter case.
            inflight.exception()

            if self._on_failure is not None:
                try:
                    self._on_failure(error)
                except Exception as callback_error:
                    logger.error("Auth failure callback error: %s", callback_error)
            if error is e:
                raise
            raise error from e
        finally:
            self._inflight = None
