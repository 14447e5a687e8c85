"""
Wire types shared by the transport, queue and facade.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class HttpMethod(Enum):
    """Methods a request can be issued (and queued) with."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def has_body(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


@dataclass
class Envelope:
    """The JSON envelope every remote call resolves to.

    Attributes:
        success: Whether the call produced the requested data
        data: Response payload, or the fallback value for degraded responses
        message: Optional human readable message
    """

    success: bool
    data: Any = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "data": self.data}
        if self.message is not None:
            result["message"] = self.message
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Envelope:
        return cls(
            success=bool(data.get("success", False)),
            data=data.get("data"),
            message=data.get("message"),
        )

    @classmethod
    def from_body(cls, body: Any) -> Envelope:
        """Interpret a 2xx response body.

        Bodies that already follow the envelope shape are taken as-is; any
        other JSON value is wrapped as a successful payload.
        """
        if isinstance(body, dict) and "success" in body:
            return cls.from_dict(body)
        return cls(success=True, data=body)


@dataclass
class RequestOptions:
    """Per-call options for the resilient client.

    Unset numeric options fall back to the client's configuration.

    Attributes:
        use_offline_queue: Queue the call when it cannot complete while offline
        cache_key: Cache key for GET responses (ignored by mutating verbs)
        cache_expiration_minutes: TTL for the cached response
        show_error_notification: Emit a notification for the final failure
        fallback_data: Data returned in a degraded envelope
        max_retries: Attempt budget, inline and in the queue
        prefer_cache: Serve a fresh cached response even while online
    """

    use_offline_queue: bool = True
    cache_key: str | None = None
    cache_expiration_minutes: float | None = None
    show_error_notification: bool = True
    fallback_data: Any = None
    max_retries: int | None = None
    prefer_cache: bool = True
