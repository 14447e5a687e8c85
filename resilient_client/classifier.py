"""
Failure classification.

Turns a failed attempt into an ``ErrorVerdict``: what kind of failure it
was, whether retrying can help, how long to wait before the next attempt,
and what to tell the user. Classification is a pure decision; reporting
(error log + notification) is a separate step so that only final failures
reach the user.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .clock import Clock, SystemClock
from .exceptions import TransportFailure
from .notifications import DEFAULT_AUTO_HIDE_MS, NotificationCenter, Severity

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30000

NETWORK_ERROR_MESSAGE = "Network connection failed. Please check your internet connection."

# Fixed user-facing texts; these replace whatever the server said.
_OVERRIDE_MESSAGES = {
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    429: "Too many requests. Please try again later.",
    500: "Internal server error. Please try again later.",
    503: "Service temporarily unavailable. Please try again later.",
}

# Used when the server sent no message of its own.
_DEFAULT_MESSAGES = {
    400: "Bad request. Please check your input.",
    401: "Authentication required. Please log in.",
    408: "Request timeout. Please try again.",
    502: "Bad gateway. Please try again later.",
    504: "Gateway timeout. Please try again later.",
}

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred."


class ErrorKind(Enum):
    NETWORK = "network_error"
    AUTH = "auth_error"
    PERMISSION = "permission_error"
    SERVER = "server_error"
    VALIDATION = "validation_error"
    UNKNOWN = "unknown"


_TITLES = {
    ErrorKind.NETWORK: "Connection Problem",
    ErrorKind.AUTH: "Authentication Required",
    ErrorKind.PERMISSION: "Access Denied",
    ErrorKind.SERVER: "Server Issue",
}

_SEVERITIES = {
    ErrorKind.NETWORK: Severity.WARNING,
    ErrorKind.SERVER: Severity.WARNING,
}


@dataclass(frozen=True)
class ErrorVerdict:
    """Outcome of classifying one failed attempt.

    Attributes:
        kind: Failure category
        message: Human readable message for the user
        retryable: Whether another attempt can succeed
        backoff_ms: Delay before the next attempt (0 when not retryable)
        status: HTTP status, None when no response reached the client
        code: Server error code, or HTTP_<status> / NETWORK_ERROR
        details: Structured details from the server body
        timestamp: When the verdict was reached
    """

    kind: ErrorKind
    message: str
    retryable: bool
    backoff_ms: int
    status: int | None = None
    code: str = ""
    details: Any = None
    timestamp: datetime | None = None

    @property
    def title(self) -> str:
        return _TITLES.get(self.kind, "Error")

    @property
    def severity(self) -> Severity:
        return _SEVERITIES.get(self.kind, Severity.ERROR)


@dataclass
class ErrorLogEntry:
    verdict: ErrorVerdict
    context: str | None
    timestamp: datetime = field(default_factory=datetime.now)


class ErrorClassifier:
    """Maps failed calls to verdicts and reports final failures.

    Rules:
    - no response → NETWORK, retryable, exponential backoff
    - 401 → AUTH (handled by the token refresh path, never retried here)
    - 403 → PERMISSION, 404 and other 4xx → VALIDATION, all terminal
    - 429 → SERVER, retryable, exponential backoff honoring Retry-After
    - 5xx → SERVER, retryable, linear backoff
    - anything else → UNKNOWN, terminal
    """

    def __init__(
        self,
        notifier: NotificationCenter | None = None,
        clock: Clock | None = None,
        backoff_base_ms: int = BACKOFF_BASE_MS,
        backoff_cap_ms: int = BACKOFF_CAP_MS,
        error_log_size: int = 100,
    ) -> None:
        self.notifier = notifier
        self._clock = clock or SystemClock()
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._error_log: deque[ErrorLogEntry] = deque(maxlen=error_log_size)

    def classify(self, failure: TransportFailure, attempt: int = 1) -> ErrorVerdict:
        """Classify a failed attempt.

        Args:
            failure: The transport failure
            attempt: 1-based number of the attempt that failed

        Returns:
            The verdict, including the delay before attempt ``attempt + 1``
        """
        attempt = max(attempt, 1)
        now = self._clock.now()

        status = failure.status
        if status is None:
            return ErrorVerdict(
                kind=ErrorKind.NETWORK,
                message=NETWORK_ERROR_MESSAGE,
                retryable=True,
                backoff_ms=self._exponential(attempt),
                code="NETWORK_ERROR",
                details=failure.message,
                timestamp=now,
            )

        body = failure.body if isinstance(failure.body, dict) else {}
        code = str(body.get("code") or f"HTTP_{status}")
        message = self._message_for(status, body.get("message"))
        details = body.get("details")

        if status == 401:
            kind, retryable, backoff = ErrorKind.AUTH, False, 0
        elif status == 403:
            kind, retryable, backoff = ErrorKind.PERMISSION, False, 0
        elif status == 429:
            kind, retryable = ErrorKind.SERVER, True
            backoff = self._rate_limited(attempt, failure.retry_after)
        elif 500 <= status <= 599:
            kind, retryable, backoff = ErrorKind.SERVER, True, self._linear(attempt)
        elif 400 <= status <= 499:
            kind, retryable, backoff = ErrorKind.VALIDATION, False, 0
        else:
            kind, retryable, backoff = ErrorKind.UNKNOWN, False, 0

        return ErrorVerdict(
            kind=kind,
            message=message,
            retryable=retryable,
            backoff_ms=backoff,
            status=status,
            code=code,
            details=details,
            timestamp=now,
        )

    def report(
        self,
        verdict: ErrorVerdict,
        context: str | None = None,
        notify: bool = True,
    ) -> str | None:
        """Record a final failure and tell the user about it.

        Args:
            verdict: Verdict of the failure being surfaced
            context: Where it happened (e.g. "GET /reports/u1")
            notify: Emit a notification (callers can opt out)

        Returns:
            The notification id, or None when no notification was emitted
        """
        self._error_log.append(ErrorLogEntry(verdict, context, self._clock.now()))
        logger.warning(
            "REQUEST_FAILED: kind=%s status=%s retryable=%s [%s]: %s",
            verdict.kind.value,
            verdict.status,
            verdict.retryable,
            context or "api",
            verdict.message,
        )

        if not notify or self.notifier is None:
            return None

        return self.notifier.add(
            verdict.severity,
            verdict.title,
            verdict.message,
            dismissible=True,
            auto_hide_ms=None if verdict.retryable else DEFAULT_AUTO_HIDE_MS,
        )

    def error_log(self) -> list[ErrorLogEntry]:
        return list(self._error_log)

    def clear_error_log(self) -> None:
        self._error_log.clear()

    def _exponential(self, attempt: int) -> int:
        return int(min(self.backoff_base_ms * 2 ** (attempt - 1), self.backoff_cap_ms))

    def _linear(self, attempt: int) -> int:
        return int(min(self.backoff_base_ms * attempt, self.backoff_cap_ms))

    def _rate_limited(self, attempt: int, retry_after: float | None) -> int:
        if retry_after is not None:
            return int(min(retry_after * 1000, self.backoff_cap_ms))
        return self._exponential(attempt)

    @staticmethod
    def _message_for(status: int, server_message: Any) -> str:
        if status in _OVERRIDE_MESSAGES:
            return _OVERRIDE_MESSAGES[status]
        if isinstance(server_message, str) and server_message:
            return server_message
        return _DEFAULT_MESSAGES.get(status, UNEXPECTED_ERROR_MESSAGE)
