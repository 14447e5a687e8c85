"""
HTTP transport.

Everything above this module deals in envelopes and ``TransportFailure``;
this is the only place that knows about HTTP sessions, timeouts and
multipart bodies.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import aiohttp

from .exceptions import StorageIOError, TransportFailure
from .types import Envelope

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0

ProgressCallback = Callable[[int], None]

_BODY_METHODS = {"POST", "PUT", "PATCH"}


class Transport(Protocol):
    """What the resilience layer needs from the network."""

    async def request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Envelope:
        """Send a JSON request. Raises TransportFailure unless the status is 2xx."""
        ...

    async def upload(
        self,
        url: str,
        content: bytes,
        *,
        filename: str,
        field_name: str = "file",
        fields: Mapping[str, str] | None = None,
        content_type: str = "application/octet-stream",
        headers: Mapping[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Envelope:
        """Send a multipart upload, reporting progress in whole percent."""
        ...

    async def download(
        self,
        url: str,
        directory: Path,
        filename: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Path:
        """Stream a response body into a local file and return its path."""
        ...

    async def probe(self) -> bool:
        """Return True if the health endpoint answers."""
        ...

    async def close(self) -> None: ...


class HttpTransport:
    """aiohttp implementation of the transport contract.

    Example:
        >>> async with HttpTransport("https://api.example.com/api") as transport:
        ...     envelope = await transport.request("GET", "/reports/u1")
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        health_path: str = "/health",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Prefix for relative request URLs
            timeout_seconds: Per-call timeout; expiry counts as a network failure
            probe_timeout_seconds: Timeout for the reachability probe
            health_path: Path probed by ``probe``
            session: Existing aiohttp session (owned by the caller)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.health_path = health_path
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Envelope:
        method = method.upper()
        kwargs: dict[str, Any] = {
            "headers": dict(headers or {}),
            "timeout": aiohttp.ClientTimeout(total=self.timeout_seconds),
        }
        if payload is not None and method in _BODY_METHODS:
            kwargs["json"] = payload

        session = self._get_session()
        try:
            async with session.request(method, self.resolve(url), **kwargs) as response:
                body = await self._read_body(response)
                if response.status >= 400:
                    raise self._failure(response, body)
                return Envelope.from_body(body)
        except TransportFailure:
            raise
        except asyncio.TimeoutError as e:
            raise TransportFailure.network(
                f"{method} {url} timed out after {self.timeout_seconds:g}s", e
            ) from e
        except aiohttp.ClientError as e:
            raise TransportFailure.network(f"{method} {url} failed: {e}", e) from e

    async def upload(
        self,
        url: str,
        content: bytes,
        *,
        filename: str,
        field_name: str = "file",
        fields: Mapping[str, str] | None = None,
        content_type: str = "application/octet-stream",
        headers: Mapping[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Envelope:
        boundary = uuid.uuid4().hex
        body = build_multipart_body(
            boundary,
            content,
            filename=filename,
            field_name=field_name,
            fields=fields,
            content_type=content_type,
        )
        request_headers = dict(headers or {})
        request_headers["Content-Type"] = f"multipart/form-data; boundary={boundary}"
        request_headers["Content-Length"] = str(len(body))

        session = self._get_session()
        try:
            async with session.post(
                self.resolve(url),
                data=_stream_with_progress(body, on_progress),
                headers=request_headers,
                timeout=self._transfer_timeout(),
            ) as response:
                response_body = await self._read_body(response)
                if response.status >= 400:
                    raise self._failure(response, response_body)
                return Envelope.from_body(response_body)
        except TransportFailure:
            raise
        except asyncio.TimeoutError as e:
            raise TransportFailure.network(f"Upload to {url} timed out", e) from e
        except aiohttp.ClientError as e:
            raise TransportFailure.network(f"Upload to {url} failed: {e}", e) from e

    async def download(
        self,
        url: str,
        directory: Path,
        filename: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Path:
        session = self._get_session()
        destination: Path | None = None
        try:
            async with session.get(
                self.resolve(url),
                headers=dict(headers or {}),
                timeout=self._transfer_timeout(),
            ) as response:
                if response.status >= 400:
                    raise self._failure(response, await self._read_body(response))

                disposition = response.content_disposition
                name = filename or (disposition.filename if disposition else None) or _name_from_url(url)
                destination = Path(directory) / safe_filename(name)

                try:
                    await aiofiles.os.makedirs(destination.parent, exist_ok=True)
                    async with aiofiles.open(destination, "wb") as f:
                        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                            await f.write(chunk)
                except OSError as e:
                    raise StorageIOError("download", str(destination), e) from e

                logger.info("Downloaded %s to %s", url, destination)
                return destination
        except TransportFailure:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            if destination is not None:
                await _remove_partial(destination)
            raise TransportFailure.network(f"Download of {url} failed: {e}", e) from e

    async def probe(self) -> bool:
        session = self._get_session()
        try:
            async with session.head(
                self.resolve(self.health_path),
                timeout=aiohttp.ClientTimeout(total=self.probe_timeout_seconds),
                headers={"Cache-Control": "no-cache"},
            ) as response:
                return response.status < 400
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.debug("Health probe failed: %s", e)
            return False

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    def resolve(self, url: str) -> str:
        """Absolute URL for a request path."""
        if urlparse(url).scheme in ("http", "https"):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _transfer_timeout(self) -> aiohttp.ClientTimeout:
        # Transfers may run long; only stalls count against the timeout.
        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.timeout_seconds,
            sock_read=self.timeout_seconds,
        )

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        raw = await response.read()
        if not raw:
            return None
        text = raw.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text

    @staticmethod
    def _failure(response: aiohttp.ClientResponse, body: Any) -> TransportFailure:
        message = None
        if isinstance(body, dict):
            message = body.get("message")
        return TransportFailure(
            message or f"HTTP {response.status}",
            status=response.status,
            body=body,
            headers=dict(response.headers),
        )


def build_multipart_body(
    boundary: str,
    content: bytes,
    *,
    filename: str,
    field_name: str = "file",
    fields: Mapping[str, str] | None = None,
    content_type: str = "application/octet-stream",
) -> bytes:
    """Encode form fields and one file as a multipart/form-data body."""
    parts: list[bytes] = []
    for name, value in (fields or {}).items():
        parts.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{_quote(name)}"\r\n\r\n'.encode()
            + str(value).encode("utf-8")
            + b"\r\n"
        )
    parts.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{_quote(field_name)}"; '
            f'filename="{_quote(filename)}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode()
        + content
        + b"\r\n"
    )
    parts.append(f"--{boundary}--\r\n".encode())
    return b"".join(parts)


def safe_filename(name: str) -> str:
    """Strip directory components from a server- or caller-supplied name."""
    cleaned = Path(name.replace("\\", "/")).name
    return cleaned if cleaned not in ("", ".", "..") else "download"


async def _stream_with_progress(
    body: bytes, on_progress: ProgressCallback | None
) -> AsyncIterator[bytes]:
    total = len(body)
    sent = 0
    last_reported = -1
    for offset in range(0, total, CHUNK_SIZE):
        chunk = body[offset : offset + CHUNK_SIZE]
        yield chunk
        sent += len(chunk)
        percent = round(sent * 100 / total)
        if on_progress is not None and percent != last_reported:
            last_reported = percent
            on_progress(percent)


async def _remove_partial(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except OSError:
        pass


def _name_from_url(url: str) -> str:
    return unquote(urlparse(url).path.rsplit("/", 1)[-1]) or "download"


def _quote(value: str) -> str:
    return value.replace('"', "%22").replace("\r", "").replace("\n", "")
