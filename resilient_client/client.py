"""
Resilient client facade.

Wires the transport, connectivity monitor, offline cache, classifier and
request queue together behind ``get``/``post``/``put``/``patch``/``delete``.
Request failures never raise: callers always get an ``Envelope``, degraded
(``success=False``) when the call could not complete.

Control flow for one call:

1. GET with a cache key: serve a fresh cached response if allowed
2. offline with queueing enabled: queue the call and wait for the replay
3. otherwise attempt it, retrying retryable failures inline with the
   classifier's backoff; a network failure re-probes connectivity and, if
   the server is now unreachable, hands the call to the queue
4. final failure: report once and return a degraded envelope
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

from .auth import InMemoryTokenProvider, TokenProvider, TokenRefresher, bearer_headers
from .cache import OfflineCache
from .classifier import ErrorClassifier, ErrorKind, ErrorVerdict
from .clock import Clock, SystemClock
from .config import ResilienceConfig
from .connectivity import ConnectivityListener, ConnectivityMonitor
from .exceptions import (
    AuthenticationError,
    RequestAbandonedError,
    RequestFailedError,
    SerializationError,
    StorageIOError,
    TransportFailure,
)
from .notifications import NotificationCenter, NotificationListener
from .queue import CLIENT_CLOSED_REASON, CompletionListener, RequestQueue
from .storage import FileSlotStore, SlotStore
from .transport import HttpTransport, ProgressCallback, Transport
from .types import Envelope, HttpMethod, RequestOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOWNLOAD_WRITE_FAILED_MESSAGE = "Could not save the downloaded file."


class ResilientClient:
    """Offline-aware API client.

    Example:
        >>> async with ResilientClient.create(ResilienceConfig(base_url=url)) as client:
        ...     reports = await client.get(
        ...         "/reports/u1",
        ...         RequestOptions(cache_key="reports-u1", cache_expiration_minutes=30),
        ...     )
        ...     if not reports.success:
        ...         show_placeholder(reports.message)
    """

    def __init__(
        self,
        transport: Transport,
        config: ResilienceConfig | None = None,
        store: SlotStore | None = None,
        tokens: TokenProvider | None = None,
        clock: Clock | None = None,
        notifier: NotificationCenter | None = None,
        on_auth_failure: Callable[[AuthenticationError], None] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            transport: Network transport
            config: Client configuration (defaults when omitted)
            store: Durable storage for the cache and queue slots
                (files under ``config.storage_dir`` when omitted)
            tokens: Bearer token storage
            clock: Time source shared by every component
            notifier: Notification sink
            on_auth_failure: Called when a token refresh fails and the
                tokens have been cleared (e.g. to show a login screen)
        """
        self.config = config or ResilienceConfig()
        self._clock = clock or SystemClock()
        self.transport = transport
        self.tokens = tokens or InMemoryTokenProvider()
        self.notifier = notifier or NotificationCenter(self._clock)

        store = store or FileSlotStore(self.config.storage_dir)
        self.classifier = ErrorClassifier(
            notifier=self.notifier,
            clock=self._clock,
            backoff_base_ms=self.config.backoff_base_ms,
            backoff_cap_ms=self.config.backoff_cap_ms,
            error_log_size=self.config.error_log_size,
        )
        self.monitor = ConnectivityMonitor(
            probe=transport.probe,
            clock=self._clock,
            interval_seconds=self.config.probe_interval_seconds,
            initial_online=self.config.initial_online,
        )
        self.cache = OfflineCache(store, clock=self._clock, slot=self.config.cache_slot)
        self.queue = RequestQueue(
            dispatch=self._dispatch,
            classifier=self.classifier,
            monitor=self.monitor,
            store=store,
            clock=self._clock,
            slot=self.config.queue_slot,
        )
        self.refresher = TokenRefresher(self.tokens, self._refresh_tokens, on_failure=on_auth_failure)

        self._started = False
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def create(
        cls,
        config: ResilienceConfig | None = None,
        tokens: TokenProvider | None = None,
        clock: Clock | None = None,
    ) -> ResilientClient:
        """Build a client with an aiohttp transport and file-backed storage."""
        config = config or ResilienceConfig()
        transport = HttpTransport(
            config.base_url,
            timeout_seconds=config.request_timeout_seconds,
            probe_timeout_seconds=config.probe_timeout_seconds,
            health_path=config.health_path,
        )
        return cls(
            transport,
            config=config,
            store=FileSlotStore(config.storage_dir),
            tokens=tokens,
            clock=clock,
        )

    async def __aenter__(self) -> ResilientClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Restore durable state and start background tasks."""
        if self._started:
            return

        cached = await self.cache.load()
        restored = await self.queue.load()
        await self.monitor.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._started = True

        logger.info("ResilientClient started (cached=%d, queued=%d)", cached, restored)

    async def close(self) -> None:
        """Stop background tasks and release the transport."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.queue.close()
        await self.monitor.stop()
        self.notifier.close()
        await self.transport.close()
        self._started = False

        logger.info("ResilientClient closed")

    # Requests

    async def get(self, url: str, options: RequestOptions | None = None) -> Envelope:
        return await self._execute(HttpMethod.GET, url, None, options)

    async def post(self, url: str, data: Any = None, options: RequestOptions | None = None) -> Envelope:
        return await self._execute(HttpMethod.POST, url, data, options)

    async def put(self, url: str, data: Any = None, options: RequestOptions | None = None) -> Envelope:
        return await self._execute(HttpMethod.PUT, url, data, options)

    async def patch(self, url: str, data: Any = None, options: RequestOptions | None = None) -> Envelope:
        return await self._execute(HttpMethod.PATCH, url, data, options)

    async def delete(self, url: str, options: RequestOptions | None = None) -> Envelope:
        return await self._execute(HttpMethod.DELETE, url, None, options)

    async def upload(
        self,
        url: str,
        content: bytes,
        filename: str,
        *,
        field_name: str = "file",
        fields: dict[str, str] | None = None,
        content_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
        options: RequestOptions | None = None,
    ) -> Envelope:
        """Upload a file in one attempt. Uploads are never queued.

        Args:
            url: Upload endpoint
            content: File contents
            filename: Name sent with the file part
            field_name: Form field holding the file
            fields: Extra form fields
            content_type: Content type of the file part
            on_progress: Called with whole-percent progress
            options: Notification and fallback options

        Returns:
            The server envelope, or a degraded envelope on failure
        """
        options = options or RequestOptions()
        try:
            return await self._authorized(
                lambda headers: self.transport.upload(
                    url,
                    content,
                    filename=filename,
                    field_name=field_name,
                    fields=fields,
                    content_type=content_type,
                    headers=headers,
                    on_progress=on_progress,
                )
            )
        except TransportFailure as failure:
            verdict = self.classifier.classify(failure)
            if verdict.kind is ErrorKind.NETWORK:
                await self.monitor.check_now()
            return await self._fail(verdict, f"UPLOAD {url}", options, None)

    async def download(
        self,
        url: str,
        destination: Path | str | None = None,
        filename: str | None = None,
        options: RequestOptions | None = None,
    ) -> Path:
        """Download a file in one attempt.

        Args:
            url: File URL
            destination: Directory to write into (``config.download_dir``,
                else ``<storage_dir>/downloads``)
            filename: Local file name (else taken from the response)
            options: Only ``show_error_notification`` applies

        Returns:
            Path of the downloaded file

        Raises:
            RequestFailedError: If the download failed (already reported)
        """
        if destination is not None:
            directory = Path(destination)
        else:
            directory = self.config.download_dir or self.config.storage_dir / "downloads"
        options = options or RequestOptions()
        context = f"DOWNLOAD {url}"

        try:
            return await self._authorized(
                lambda headers: self.transport.download(url, directory, filename, headers)
            )
        except TransportFailure as failure:
            verdict = self.classifier.classify(failure)
            if verdict.kind is ErrorKind.NETWORK:
                await self.monitor.check_now()
            self.classifier.report(verdict, context, notify=options.show_error_notification)
            raise RequestFailedError(verdict, url) from failure
        except StorageIOError as e:
            verdict = ErrorVerdict(
                kind=ErrorKind.UNKNOWN,
                message=DOWNLOAD_WRITE_FAILED_MESSAGE,
                retryable=False,
                backoff_ms=0,
                details=str(e),
                timestamp=self._clock.now(),
            )
            self.classifier.report(verdict, context, notify=options.show_error_notification)
            raise RequestFailedError(verdict, url) from e

    # Cache

    async def clear_cache(self, key: str | None = None) -> None:
        """Drop one cached response, or the whole cache when no key is given."""
        if key is None:
            await self.cache.clear()
        else:
            await self.cache.remove(key)

    async def get_cached_data(self, key: str) -> Any | None:
        """The cached response envelope (as a dict) for ``key``, if fresh."""
        return await self.cache.get(key)

    async def has_cached_data(self, key: str) -> bool:
        return await self.cache.has(key)

    # State and subscriptions

    def is_online(self) -> bool:
        return self.monitor.get_online_status()

    def subscribe_notifications(self, listener: NotificationListener) -> Callable[[], None]:
        return self.notifier.subscribe(listener)

    def subscribe_connectivity(self, listener: ConnectivityListener) -> Callable[[], None]:
        return self.monitor.subscribe(listener)

    def subscribe_completions(self, listener: CompletionListener) -> Callable[[], None]:
        return self.queue.subscribe_completions(listener)

    def stats(self) -> dict[str, Any]:
        status = self.queue.status()
        return {
            "connectivity": self.monitor.stats(),
            "queue_length": status.queue_length,
            "queue_processing": status.is_processing,
            "oldest_queued": status.oldest_request.isoformat() if status.oldest_request else None,
            "cache_entries": len(self.cache),
            "errors_logged": len(self.classifier.error_log()),
            "token_refreshes": self.refresher.refresh_count,
        }

    # Internals

    async def _execute(
        self,
        method: HttpMethod,
        url: str,
        payload: Any,
        options: RequestOptions | None,
    ) -> Envelope:
        options = options or RequestOptions()
        max_retries = options.max_retries
        if max_retries is None:
            max_retries = self.config.default_max_retries
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")

        context = f"{method.value} {url}"
        cache_key = options.cache_key if method is HttpMethod.GET else None

        if cache_key and (options.prefer_cache or not self.monitor.get_online_status()):
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Serving %s from cache (key=%s)", context, cache_key)
                return Envelope.from_dict(cached)

        if options.use_offline_queue and not self.monitor.get_online_status():
            return await self._queue_and_wait(method, url, payload, options, max_retries, cache_key)

        attempt = 0
        while True:
            attempt += 1
            try:
                envelope = await self._send(method, url, payload)
            except TransportFailure as failure:
                verdict = self.classifier.classify(failure, attempt)
            else:
                if cache_key and envelope.success:
                    await self._cache_response(cache_key, envelope, options)
                return envelope

            if verdict.kind is ErrorKind.NETWORK:
                await self.monitor.check_now()
                if options.use_offline_queue and not self.monitor.get_online_status():
                    logger.warning("%s failed while offline, queueing for replay", context)
                    return await self._queue_and_wait(
                        method, url, payload, options, max_retries, cache_key
                    )

            if not verdict.retryable or attempt >= max_retries:
                return await self._fail(verdict, context, options, cache_key)

            logger.warning(
                "%s failed (attempt %d/%d, kind=%s), retrying in %dms",
                context,
                attempt,
                max_retries,
                verdict.kind.value,
                verdict.backoff_ms,
            )
            await self._clock.sleep(verdict.backoff_ms / 1000)

    async def _queue_and_wait(
        self,
        method: HttpMethod,
        url: str,
        payload: Any,
        options: RequestOptions,
        max_retries: int,
        cache_key: str | None,
    ) -> Envelope:
        handle = await self.queue.enqueue(method, url, payload, max_retries=max_retries)
        try:
            envelope = await handle
        except RequestAbandonedError as e:
            if e.reason == CLIENT_CLOSED_REASON:
                # The descriptor stays persisted for the next run.
                options = dataclasses.replace(options, show_error_notification=False)
            verdict = e.verdict or ErrorVerdict(
                kind=ErrorKind.UNKNOWN,
                message=e.reason,
                retryable=False,
                backoff_ms=0,
                timestamp=self._clock.now(),
            )
            return await self._fail(verdict, f"{method.value} {url}", options, cache_key)

        if cache_key and envelope.success:
            await self._cache_response(cache_key, envelope, options)
        return envelope

    async def _fail(
        self,
        verdict: ErrorVerdict,
        context: str,
        options: RequestOptions,
        cache_key: str | None,
    ) -> Envelope:
        """Report a final failure and build the degraded envelope."""
        self.classifier.report(verdict, context, notify=options.show_error_notification)

        data = options.fallback_data
        if data is None and cache_key:
            cached = await self.cache.get(cache_key)
            if isinstance(cached, dict):
                data = cached.get("data")
        return Envelope(success=False, data=data, message=verdict.message)

    async def _cache_response(self, key: str, envelope: Envelope, options: RequestOptions) -> None:
        ttl = options.cache_expiration_minutes or self.config.default_cache_expiration_minutes
        try:
            await self.cache.store(key, envelope.to_dict(), ttl_minutes=ttl)
        except SerializationError as e:
            logger.warning("Response for %s not cached: %s", key, e)

    async def _dispatch(self, method: HttpMethod, url: str, payload: Any) -> Envelope:
        """Queue replay path: same auth handling as direct calls."""
        return await self._send(method, url, payload)

    async def _send(self, method: HttpMethod, url: str, payload: Any) -> Envelope:
        return await self._authorized(
            lambda headers: self.transport.request(method.value, url, payload, headers)
        )

    async def _authorized(self, call: Callable[[dict[str, str]], Awaitable[T]]) -> T:
        """Run a call with the bearer token, refreshing once on 401.

        A failed refresh surfaces as the original 401 failure.
        """
        token = self.tokens.get_token()
        try:
            return await call(bearer_headers(token))
        except TransportFailure as failure:
            if failure.status != 401:
                raise
            try:
                token = await self.refresher.refresh(stale_token=token)
            except AuthenticationError:
                raise failure from None
            logger.debug("Replaying request with refreshed token")
            return await call(bearer_headers(token))

    async def _refresh_tokens(self, refresh_token: str) -> tuple[str, str | None]:
        envelope = await self.transport.request(
            HttpMethod.POST.value,
            self.config.refresh_path,
            {"refreshToken": refresh_token},
            {},
        )
        data = envelope.data if isinstance(envelope.data, dict) else {}
        token = data.get("token")
        if not envelope.success or not token:
            raise AuthenticationError("refresh response carried no token")
        return token, data.get("refreshToken")

    async def _sweep_loop(self) -> None:
        while True:
            await self._clock.sleep(self.config.cache_sweep_interval_seconds)
            removed = await self.cache.purge_expired()
            if removed:
                logger.debug("Cache sweep removed %d entries", removed)
