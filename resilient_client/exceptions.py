"""
Custom exceptions for the resilience layer.

Request failures normally surface as degraded envelopes; these exceptions
cross the transport and storage boundaries, and are raised to callers only
where an operation cannot return an envelope (downloads, abandoned queue
handles, invalid storage blobs).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .classifier import ErrorVerdict


class ResilienceError(Exception):
    """Base exception for all resilience layer errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageIOError(ResilienceError):
    """Raised when a durable storage operation fails."""

    def __init__(self, operation: str, slot: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if slot:
            details["slot"] = slot
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if slot:
            message += f": {slot}"
        super().__init__(message, details)
        self.operation = operation
        self.slot = slot
        self.cause = cause


class SerializationError(ResilienceError):
    """Raised when a value cannot be stored as JSON."""

    def __init__(self, key: str, cause: Exception | None = None):
        details = {"key": key}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Value for {key} is not JSON-serializable", details)
        self.key = key
        self.cause = cause


class TransportFailure(ResilienceError):
    """Raised by a transport when a call does not produce a 2xx response.

    ``status`` is None when no response reached the client (DNS failure,
    refused connection, timeout). Otherwise it carries the HTTP status and,
    when the server sent one, the structured error body.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status = status
        self.body = body
        self.headers = dict(headers or {})
        self.cause = cause

    @classmethod
    def network(cls, message: str, cause: Exception | None = None) -> TransportFailure:
        """Build a failure for a call that never reached the server."""
        return cls(message, status=None, cause=cause)

    @property
    def is_network(self) -> bool:
        return self.status is None

    @property
    def retry_after(self) -> float | None:
        """Retry-After header value in seconds, if the server sent one."""
        value = self.headers.get("Retry-After") or self.headers.get("retry-after")
        if value is None:
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None


class AuthenticationError(ResilienceError):
    """Raised when the bearer token cannot be refreshed."""

    def __init__(self, reason: str, cause: Exception | None = None):
        details = {"reason": reason}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Authentication failed: {reason}", details)
        self.reason = reason
        self.cause = cause


class RequestAbandonedError(ResilienceError):
    """Raised into a queued request's handle when it will never be retried again."""

    def __init__(self, request_id: str, verdict: ErrorVerdict | None = None, reason: str | None = None):
        reason = reason or (verdict.message if verdict else "abandoned")
        details = {"request_id": request_id, "reason": reason}
        if verdict is not None:
            details["kind"] = verdict.kind.value
        super().__init__(f"Queued request {request_id} abandoned: {reason}", details)
        self.request_id = request_id
        self.verdict = verdict
        self.reason = reason


class RequestFailedError(ResilienceError):
    """Raised by operations that cannot degrade, such as downloads."""

    def __init__(self, verdict: ErrorVerdict, url: str | None = None):
        details = {"kind": verdict.kind.value, "retryable": verdict.retryable}
        if url:
            details["url"] = url
        super().__init__(verdict.message, details)
        self.verdict = verdict
        self.url = url
