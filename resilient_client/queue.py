"""
Persisted retry queue.

Holds calls that could not complete and replays them in enqueue order once
the server is reachable. Request descriptors are written to a durable slot
after every mutation; completion handles live only in memory.

After a restart the restored descriptors are replayed like any other entry.
Nobody is awaiting them any more, so their outcomes are published on the
completion stream (``subscribe_completions``) keyed by request id. Every
completion, restored or not, goes through that stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .classifier import UNEXPECTED_ERROR_MESSAGE, ErrorClassifier, ErrorKind, ErrorVerdict
from .clock import Clock, SystemClock, parse_timestamp
from .connectivity import ConnectivityMonitor, ConnectivityState
from .exceptions import RequestAbandonedError, SerializationError, StorageIOError, TransportFailure
from .logging_utils import RequestLoggerAdapter
from .storage import SlotStore
from .types import Envelope, HttpMethod

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SLOT = "request_queue"
DEFAULT_MAX_RETRIES = 3
CLIENT_CLOSED_REASON = "client closed"

Dispatch = Callable[[HttpMethod, str, Any], Awaitable[Envelope]]
CompletionListener = Callable[["RequestCompletion"], None]


@dataclass
class QueuedRequest:
    """Descriptor of a call waiting to be replayed.

    Attributes:
        id: Opaque request identifier
        method: HTTP method
        url: Request URL (relative to the transport's base URL)
        payload: JSON body for POST/PUT/PATCH
        enqueued_at: When the request entered the queue
        retry_count: Failed replay attempts so far
        max_retries: Total replay attempts before the request is abandoned
        last_error: Message of the most recent failure
    """

    id: str
    method: HttpMethod
    url: str
    payload: Any = None
    enqueued_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method.value,
            "url": self.url,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at.isoformat() if self.enqueued_at else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedRequest:
        enqueued_at = data.get("enqueued_at")
        return cls(
            id=data["id"],
            method=HttpMethod(data["method"]),
            url=data["url"],
            payload=data.get("payload"),
            enqueued_at=parse_timestamp(enqueued_at) if enqueued_at else None,
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class RequestCompletion:
    """Final outcome of a queued request."""

    request_id: str
    success: bool
    envelope: Envelope | None = None
    verdict: ErrorVerdict | None = None
    restored: bool = False


@dataclass
class DrainResult:
    """Result of one drain pass."""

    skipped: bool = False
    attempted: int = 0
    succeeded: int = 0
    requeued: int = 0
    abandoned: int = 0
    attempted_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    is_processing: bool
    oldest_request: datetime | None = None


class RequestQueue:
    """FIFO retry queue with a single-drain guard.

    A drain pass takes a snapshot of the queue, clears it, and replays each
    entry once in order. Entries that fail with a retryable error go back to
    the tail; the rest settle. Only one pass runs at a time; a pass requested
    while another is running is a no-op.
    """

    def __init__(
        self,
        dispatch: Dispatch,
        classifier: ErrorClassifier,
        monitor: ConnectivityMonitor,
        store: SlotStore,
        clock: Clock | None = None,
        slot: str = DEFAULT_QUEUE_SLOT,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            dispatch: Sends one request through the transport path
            classifier: Decides whether a failed replay is retried
            monitor: Connectivity state; passes run only while online
            store: Durable storage for request descriptors
            clock: Time source for timestamps and retry delays
            slot: Storage slot name
            id_factory: Generates request ids
        """
        self._dispatch = dispatch
        self._classifier = classifier
        self._monitor = monitor
        self._store = store
        self._clock = clock or SystemClock()
        self.slot = slot
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._entries: list[QueuedRequest] = []
        self._handles: dict[str, asyncio.Future[Envelope]] = {}
        self._restored_ids: set[str] = set()
        self._listeners: list[CompletionListener] = []

        self._draining = False
        self._in_flight: list[QueuedRequest] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retry_task: asyncio.Task[None] | None = None

        self._unsubscribe = monitor.subscribe(self._on_connectivity_change)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def __len__(self) -> int:
        return len(self._entries) + len(self._in_flight)

    def pending(self) -> list[QueuedRequest]:
        """Copies of every request still waiting, in replay order."""
        return [QueuedRequest.from_dict(entry.to_dict()) for entry in self._in_flight + self._entries]

    def status(self) -> QueueStatus:
        waiting = self._in_flight + self._entries
        return QueueStatus(
            queue_length=len(waiting),
            is_processing=self._draining,
            oldest_request=min(
                (e.enqueued_at for e in waiting if e.enqueued_at is not None),
                default=None,
            ),
        )

    def subscribe_completions(self, listener: CompletionListener) -> Callable[[], None]:
        """Register a listener for final outcomes.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def load(self) -> int:
        """Restore request descriptors persisted by a previous run.

        Returns:
            Number of restored requests
        """
        try:
            raw = await self._store.read(self.slot)
        except StorageIOError as e:
            logger.warning("Request queue unreadable, starting empty: %s", e)
            return 0
        if not raw:
            return 0

        try:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("queue blob is not a list")
            if not all(isinstance(item, dict) for item in items):
                raise ValueError("queue entries must be objects")
            restored = [QueuedRequest.from_dict(item) for item in items]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Discarding corrupt request queue blob: %s", e)
            await self._persist()
            return 0

        known = {entry.id for entry in self._entries}
        restored = [entry for entry in restored if entry.id not in known]
        self._entries = restored + self._entries
        self._restored_ids.update(entry.id for entry in restored)

        if restored:
            logger.info("Restored %d queued requests", len(restored))
            if self._monitor.get_online_status():
                self._spawn(self.drain())
        return len(restored)

    async def enqueue(
        self,
        method: HttpMethod,
        url: str,
        payload: Any = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> asyncio.Future[Envelope]:
        """Queue a request for replay.

        Args:
            method: HTTP method
            url: Request URL
            payload: JSON body
            max_retries: Total replay attempts before abandoning

        Returns:
            Future resolved with the server envelope, or failed with
            RequestAbandonedError once the request is given up
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        try:
            payload = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"{method.value} {url}", e) from e

        request = QueuedRequest(
            id=self._id_factory(),
            method=method,
            url=url,
            payload=payload,
            enqueued_at=self._clock.now(),
            max_retries=max_retries,
        )
        handle: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._handles[request.id] = handle
        self._entries.append(request)
        await self._persist()

        self._log(request).info("Request queued (queue length=%d)", len(self))

        if self._monitor.get_online_status():
            self._spawn(self.drain())
        return handle

    async def drain(self) -> DrainResult:
        """Run one pass over the queue.

        Returns:
            What the pass did; ``skipped`` is set when another pass was
            already running, the monitor is offline, or the queue is empty
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return DrainResult(skipped=True)
        if not self._monitor.get_online_status() or not self._entries:
            return DrainResult(skipped=True)

        self._draining = True
        result = DrainResult()
        next_delay_ms = 0
        try:
            self._in_flight = list(self._entries)
            self._entries = []

            while self._in_flight:
                # Stays in _in_flight (and in the persisted snapshot) until settled.
                request = self._in_flight[0]
                result.attempted += 1
                result.attempted_ids.append(request.id)
                outcome = await self._replay(request)
                self._in_flight.pop(0)

                if outcome is None:
                    result.succeeded += 1
                elif outcome.retryable and request.retry_count < request.max_retries:
                    self._entries.append(request)
                    result.requeued += 1
                    next_delay_ms = max(next_delay_ms, outcome.backoff_ms)
                else:
                    self._abandon(request, outcome)
                    result.abandoned += 1

                await self._persist()
        finally:
            self._entries = self._in_flight + self._entries
            self._in_flight = []
            self._draining = False

        logger.info(
            "Drain pass finished: attempted=%d succeeded=%d requeued=%d abandoned=%d",
            result.attempted,
            result.succeeded,
            result.requeued,
            result.abandoned,
        )

        if self._entries and self._monitor.get_online_status():
            self._schedule_drain(next_delay_ms / 1000)
        return result

    async def clear(self) -> None:
        """Drop every queued request, failing any open handles."""
        for request in self._in_flight + self._entries:
            handle = self._handles.pop(request.id, None)
            if handle is not None and not handle.done():
                handle.set_exception(RequestAbandonedError(request.id, reason="queue cleared"))
        self._entries = []
        self._in_flight = []
        self._restored_ids.clear()
        try:
            await self._store.delete(self.slot)
        except StorageIOError as e:
            logger.warning("Failed to delete request queue slot: %s", e)

    async def close(self) -> None:
        """Stop listening for connectivity changes and cancel pending passes.

        Open handles are failed; persisted descriptors are kept and replayed
        by the next ``load``.
        """
        self._unsubscribe()
        handles = list(self._handles.items())
        self._handles.clear()
        for request_id, handle in handles:
            if not handle.done():
                handle.set_exception(RequestAbandonedError(request_id, reason=CLIENT_CLOSED_REASON))
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._retry_task = None

    async def _replay(self, request: QueuedRequest) -> ErrorVerdict | None:
        """Attempt a request once. Returns None on success, else the verdict."""
        log = self._log(request)
        try:
            envelope = await self._dispatch(request.method, request.url, request.payload)
        except TransportFailure as failure:
            request.retry_count += 1
            verdict = self._classifier.classify(failure, attempt=request.retry_count)
            request.last_error = verdict.message
            log.warning(
                "Replay failed: attempt=%d/%d kind=%s retryable=%s",
                request.retry_count,
                request.max_retries,
                verdict.kind.value,
                verdict.retryable,
            )
            return verdict
        except Exception as e:
            request.retry_count += 1
            log.exception("Replay raised an unexpected error")
            return ErrorVerdict(
                kind=ErrorKind.UNKNOWN,
                message=UNEXPECTED_ERROR_MESSAGE,
                retryable=False,
                backoff_ms=0,
                details=str(e),
                timestamp=self._clock.now(),
            )

        log.info("Replay succeeded after %d failed attempts", request.retry_count)
        self._settle(request, RequestCompletion(request.id, True, envelope=envelope))
        handle = self._handles.pop(request.id, None)
        if handle is not None and not handle.done():
            handle.set_result(envelope)
        return None

    def _abandon(self, request: QueuedRequest, verdict: ErrorVerdict) -> None:
        self._log(request).error(
            "Request abandoned after %d attempts: %s", request.retry_count, verdict.message
        )
        handle = self._handles.pop(request.id, None)
        if handle is None or handle.done():
            # Nobody is waiting to surface this failure.
            self._classifier.report(verdict, f"{request.method.value} {request.url}")
        self._settle(request, RequestCompletion(request.id, False, verdict=verdict))
        if handle is not None and not handle.done():
            handle.set_exception(RequestAbandonedError(request.id, verdict=verdict))

    def _settle(self, request: QueuedRequest, completion: RequestCompletion) -> None:
        if request.id in self._restored_ids:
            self._restored_ids.discard(request.id)
            completion = RequestCompletion(
                completion.request_id,
                completion.success,
                envelope=completion.envelope,
                verdict=completion.verdict,
                restored=True,
            )
        for listener in list(self._listeners):
            try:
                listener(completion)
            except Exception as e:
                logger.error("Completion listener error: %s", e)

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if state.is_online and (self._entries or self._in_flight):
            self._spawn(self.drain())

    def _schedule_drain(self, delay_seconds: float) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = self._spawn(self._delayed_drain(delay_seconds))

    async def _delayed_drain(self, delay_seconds: float) -> None:
        await self._clock.sleep(delay_seconds)
        # Clear first so the pass below may schedule its own follow-up.
        self._retry_task = None
        await self.drain()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Request queue task failed: %s", error)

    async def _persist(self) -> None:
        descriptors = [entry.to_dict() for entry in self._in_flight + self._entries]
        try:
            await self._store.write(self.slot, json.dumps(descriptors))
        except StorageIOError as e:
            logger.warning("Failed to persist request queue: %s", e)

    def _log(self, request: QueuedRequest) -> RequestLoggerAdapter:
        return RequestLoggerAdapter(
            logger,
            {"request_id": request.id, "method": request.method.value, "url": request.url},
        )
