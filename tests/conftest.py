"""
Shared test configuration and fixtures.

Provides a scripted fake transport, a manual clock and in-memory storage so
client tests run without a network, real timers or disk.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from resilient_client import (
    Envelope,
    InMemoryTokenProvider,
    ManualClock,
    MemorySlotStore,
    ResilienceConfig,
    ResilientClient,
    TransportFailure,
)


@dataclass
class Call:
    method: str
    url: str
    payload: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class FakeTransport:
    """
    Transport double with scripted outcomes.

    Outcomes are queued per (method, url); each is an Envelope to return or
    an exception to raise. Unscripted calls return ``default``. A ``handler``
    (sync or async) takes over completely when set.
    """

    def __init__(self) -> None:
        self.scripts: dict[tuple[str, str], list[Any]] = defaultdict(list)
        self.default = Envelope(success=True, data={})
        self.handler: Callable[..., Any] | None = None
        self.calls: list[Call] = []
        self.reachable = True
        self.probe_calls = 0
        self.uploads: list[dict[str, Any]] = []
        self.upload_outcome: Any = None
        self.download_outcome: Any = None
        self.closed = False

    def script(self, method: str, url: str, *outcomes: Any) -> None:
        self.scripts[(method, url)].extend(outcomes)

    def calls_to(self, method: str, url: str) -> list[Call]:
        return [c for c in self.calls if c.method == method and c.url == url]

    async def request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Envelope:
        call = Call(method, url, payload, dict(headers or {}))
        self.calls.append(call)

        if self.handler is not None:
            outcome = self.handler(call)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        else:
            queued = self.scripts.get((method, url))
            outcome = queued.pop(0) if queued else self.default

        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def upload(self, url: str, content: bytes, **kwargs: Any) -> Envelope:
        self.uploads.append({"url": url, "content": content, **kwargs})
        if isinstance(self.upload_outcome, BaseException):
            raise self.upload_outcome
        on_progress = kwargs.get("on_progress")
        if on_progress is not None:
            on_progress(50)
            on_progress(100)
        return self.upload_outcome or Envelope(success=True, data={"size": len(content)})

    async def download(
        self,
        url: str,
        directory: Path,
        filename: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Path:
        if isinstance(self.download_outcome, BaseException):
            raise self.download_outcome
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / (filename or "download")
        path.write_bytes(b"file-body")
        return path

    async def probe(self) -> bool:
        self.probe_calls += 1
        return self.reachable

    async def close(self) -> None:
        self.closed = True


def http_error(status: int, body: Any = None, headers: dict[str, str] | None = None) -> TransportFailure:
    """Build the failure a transport raises for a non-2xx response."""
    return TransportFailure(f"HTTP {status}", status=status, body=body, headers=headers)


def network_error() -> TransportFailure:
    return TransportFailure.network("connection refused")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemorySlotStore:
    return MemorySlotStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def config(tmp_path: Path) -> ResilienceConfig:
    """Config with zero backoff so inline retries do not wait on the clock."""
    return ResilienceConfig(
        base_url="http://api.test/api",
        storage_dir=tmp_path / "state",
        backoff_base_ms=0,
        backoff_cap_ms=0,
    )


@pytest.fixture
def tokens() -> InMemoryTokenProvider:
    return InMemoryTokenProvider(token="t1", refresh_token="r1")


@pytest.fixture
async def client(
    transport: FakeTransport,
    config: ResilienceConfig,
    store: MemorySlotStore,
    tokens: InMemoryTokenProvider,
    clock: ManualClock,
) -> AsyncIterator[ResilientClient]:
    """Started client on the fake transport; online unless a test flips it."""
    client = ResilientClient(transport, config=config, store=store, tokens=tokens, clock=clock)
    await client.start()
    await clock.advance(0)
    yield client
    await client.close()
