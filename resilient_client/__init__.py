"""
Resilient Client

Resilience layer for client applications talking to a JSON API.

Provides:
- Connectivity monitoring (platform signals + periodic health probe)
- Offline cache with per-entry expiration, persisted across restarts
- Error classification with retry/backoff decisions and user notifications
- Persisted request queue replayed when connectivity returns
- Bearer auth with single-flight token refresh

Usage:

    >>> from resilient_client import ResilienceConfig, ResilientClient, RequestOptions
    >>> config = ResilienceConfig(base_url="https://api.example.com/api")
    >>> async with ResilientClient.create(config) as client:
    ...     # Queued while offline, replayed once the server is reachable
    ...     await client.post("/content/session", {"userId": "u1"})
    ...
    ...     # Served from cache for 30 minutes
    ...     reports = await client.get(
    ...         "/reports/u1",
    ...         RequestOptions(cache_key="reports-u1", cache_expiration_minutes=30),
    ...     )

Testing:

    # Deterministic time and in-memory storage
    from resilient_client import ManualClock, MemorySlotStore
"""

from .auth import InMemoryTokenProvider, TokenProvider, TokenRefresher
from .cache import CacheEntry, OfflineCache
from .classifier import ErrorClassifier, ErrorKind, ErrorVerdict
from .client import ResilientClient
from .clock import Clock, ManualClock, SystemClock
from .config import ResilienceConfig
from .connectivity import ConnectivityMonitor, ConnectivityState, TransitionSource
from .exceptions import (
    AuthenticationError,
    RequestAbandonedError,
    RequestFailedError,
    ResilienceError,
    SerializationError,
    StorageIOError,
    TransportFailure,
)
from .logging_utils import configure_structured_logging
from .notifications import Notification, NotificationCenter, Severity
from .queue import QueuedRequest, QueueStatus, RequestCompletion, RequestQueue
from .storage import FileSlotStore, MemorySlotStore, SlotStore
from .transport import HttpTransport, Transport
from .types import Envelope, HttpMethod, RequestOptions

__version__ = "0.1.0"

__all__ = [
    # Facade
    "ResilientClient",
    "ResilienceConfig",
    "RequestOptions",
    "Envelope",
    "HttpMethod",
    # Components
    "ConnectivityMonitor",
    "ConnectivityState",
    "TransitionSource",
    "OfflineCache",
    "CacheEntry",
    "ErrorClassifier",
    "ErrorKind",
    "ErrorVerdict",
    "RequestQueue",
    "QueuedRequest",
    "QueueStatus",
    "RequestCompletion",
    "NotificationCenter",
    "Notification",
    "Severity",
    # Auth
    "TokenProvider",
    "InMemoryTokenProvider",
    "TokenRefresher",
    # Infrastructure
    "Transport",
    "HttpTransport",
    "SlotStore",
    "FileSlotStore",
    "MemorySlotStore",
    "Clock",
    "SystemClock",
    "ManualClock",
    "configure_structured_logging",
    # Exceptions
    "ResilienceError",
    "StorageIOError",
    "SerializationError",
    "TransportFailure",
    "AuthenticationError",
    "RequestAbandonedError",
    "RequestFailedError",
]
