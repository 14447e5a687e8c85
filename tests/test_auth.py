"""Tests for token storage and single-flight refresh."""

from __future__ import annotations

import asyncio

import pytest

from resilient_client import AuthenticationError, InMemoryTokenProvider, TokenRefresher
from resilient_client.auth import bearer_headers


class GatedRefresh:
    """Refresh call that blocks until released."""

    def __init__(self, token: str = "t2", refresh_token: str | None = "r2") -> None:
        self.gate = asyncio.Event()
        self.calls: list[str] = []
        self.result = (token, refresh_token)
        self.error: Exception | None = None

    async def __call__(self, refresh_token: str) -> tuple[str, str | None]:
        self.calls.append(refresh_token)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class TestInMemoryTokenProvider:
    """Tests for InMemoryTokenProvider."""

    def test_set_and_clear(self) -> None:
        tokens = InMemoryTokenProvider()
        tokens.set_tokens("t1", "r1")

        assert tokens.get_token() == "t1"
        assert tokens.get_refresh_token() == "r1"

        tokens.clear_tokens()
        assert tokens.get_token() is None
        assert tokens.get_refresh_token() is None

    def test_keeps_refresh_token_when_not_rotated(self) -> None:
        tokens = InMemoryTokenProvider("t1", "r1")
        tokens.set_tokens("t2")

        assert tokens.get_token() == "t2"
        assert tokens.get_refresh_token() == "r1"

    def test_bearer_headers(self) -> None:
        assert bearer_headers("abc") == {"Authorization": "Bearer abc"}
        assert bearer_headers(None) == {}


class TestTokenRefresher:
    """Tests for TokenRefresher."""

    async def test_refresh_updates_tokens(self) -> None:
        tokens = InMemoryTokenProvider("t1", "r1")
        refresh_call = GatedRefresh()
        refresh_call.gate.set()
        refresher = TokenRefresher(tokens, refresh_call)

        assert await refresher.refresh("t1") == "t2"
        assert refresh_call.calls == ["r1"]
        assert tokens.get_token() == "t2"
        assert tokens.get_refresh_token() == "r2"
        assert refresher.is_refreshing is False

    async def test_concurrent_callers_share_one_refresh(self) -> None:
        tokens = InMemoryTokenProvider("t1", "r1")
        refresh_call = GatedRefresh()
        refresher = TokenRefresher(tokens, refresh_call)

        waiters = [asyncio.create_task(refresher.refresh("t1")) for _ in range(3)]
        await asyncio.sleep(0)
        assert refresher.is_refreshing is True

        refresh_call.gate.set()
        results = await asyncio.gather(*waiters)

        assert results == ["t2", "t2", "t2"]
        assert refresh_call.calls == ["r1"]
        assert refresher.refresh_count == 1

    async def test_stale_token_skips_refresh(self) -> None:
        """Test that a caller holding an outdated token reuses the current one."""
        tokens = InMemoryTokenProvider("t2", "r2")
        refresh_call = GatedRefresh()
        refresher = TokenRefresher(tokens, refresh_call)

        assert await refresher.refresh("t1") == "t2"
        assert refresh_call.calls == []

    async def test_failure_rejects_every_waiter_and_clears_tokens(self) -> None:
        tokens = InMemoryTokenProvider("t1", "r1")
        refresh_call = GatedRefresh()
        refresh_call.error = RuntimeError("refresh endpoint returned 401")
        failures: list[AuthenticationError] = []
        refresher = TokenRefresher(tokens, refresh_call, on_failure=failures.append)

        waiters = [asyncio.create_task(refresher.refresh("t1")) for _ in range(3)]
        await asyncio.sleep(0)
        refresh_call.gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, AuthenticationError) for r in results)
        assert tokens.get_token() is None
        assert tokens.get_refresh_token() is None
        assert len(failures) == 1
        assert refresh_call.calls == ["r1"]

    async def test_missing_refresh_token(self) -> None:
        tokens = InMemoryTokenProvider("t1", None)
        refresher = TokenRefresher(tokens, GatedRefresh())

        with pytest.raises(AuthenticationError, match="no refresh token"):
            await refresher.refresh("t1")

        assert tokens.get_token() is None

    async def test_refresh_after_failure_starts_fresh(self) -> None:
        tokens = InMemoryTokenProvider("t1", "r1")
        refresh_call = GatedRefresh()
        refresh_call.error = RuntimeError("down")
        refresh_call.gate.set()
        refresher = TokenRefresher(tokens, refresh_call)

        with pytest.raises(AuthenticationError):
            await refresher.refresh("t1")

        tokens.set_tokens("t3", "r3")
        refresh_call.error = None
        assert await refresher.refresh("t3") == "t2"
        assert refresh_call.calls == ["r1", "r3"]
