"""
Durable cache with per-entry expiration.

Keeps JSON values in memory and mirrors the whole map into one storage slot
after every mutation, so cached data survives restarts and stays available
while offline.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .clock import Clock, SystemClock, parse_timestamp
from .exceptions import SerializationError, StorageIOError
from .storage import SlotStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SLOT = "offline_cache"


@dataclass
class CacheEntry:
    """A cached JSON value.

    Attributes:
        key: Cache key
        value: JSON value
        stored_at: When the value was stored
        expires_at: When the value stops being served (None = never)
    """

    key: str
    value: Any
    stored_at: datetime
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "stored_at": self.stored_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        expires_at = data.get("expires_at")
        return cls(
            key=data["key"],
            value=data.get("value"),
            stored_at=parse_timestamp(data["stored_at"]),
            expires_at=parse_timestamp(expires_at) if expires_at else None,
        )


class OfflineCache:
    """Key/value cache with TTLs backed by a durable slot.

    Expired entries behave exactly like missing ones: ``get`` and ``has``
    delete them on access and ``purge_expired`` sweeps the rest.

    Example:
        >>> cache = OfflineCache(store)
        >>> await cache.load()
        >>> await cache.store("reports-u1", {"score": 3}, ttl_minutes=30)
        >>> await cache.get("reports-u1")
        {'score': 3}
    """

    def __init__(
        self,
        store: SlotStore,
        clock: Clock | None = None,
        slot: str = DEFAULT_CACHE_SLOT,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.slot = slot
        self._entries: dict[str, CacheEntry] = {}

    async def load(self) -> int:
        """Load entries from durable storage and drop expired ones.

        An unreadable or corrupt blob is treated as an empty cache.

        Returns:
            Number of live entries after the sweep
        """
        self._entries = {}
        try:
            raw = await self._store.read(self.slot)
        except StorageIOError as e:
            logger.warning("Offline cache unreadable, starting empty: %s", e)
            return 0

        if raw:
            try:
                items = json.loads(raw)
                if not isinstance(items, list):
                    raise ValueError("cache blob is not a list")
                for item in items:
                    if not isinstance(item, dict):
                        raise ValueError(f"cache entry is not an object: {item!r}")
                    entry = CacheEntry.from_dict(item)
                    self._entries[entry.key] = entry
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Discarding corrupt offline cache blob: %s", e)
                self._entries = {}

        await self.purge_expired()
        logger.debug("Offline cache loaded: %d entries", len(self._entries))
        return len(self._entries)

    async def store(self, key: str, value: Any, ttl_minutes: float | None = None) -> None:
        """Store a value, replacing any existing entry for ``key``.

        Args:
            key: Cache key
            value: JSON-serializable value (a deep copy is kept)
            ttl_minutes: Minutes until expiry; None keeps it until removed

        Raises:
            SerializationError: If the value is not JSON-serializable
            ValueError: If ttl_minutes is not positive
        """
        if ttl_minutes is not None and ttl_minutes <= 0:
            raise ValueError(f"ttl_minutes must be > 0, got {ttl_minutes}")
        try:
            snapshot = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise SerializationError(key, e) from e

        now = self._clock.now()
        self._entries[key] = CacheEntry(
            key=key,
            value=snapshot,
            stored_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes) if ttl_minutes is not None else None,
        )
        await self._flush()

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        entry = await self._live_entry(key)
        return copy.deepcopy(entry.value) if entry is not None else None

    async def has(self, key: str) -> bool:
        return await self._live_entry(key) is not None

    async def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            await self._flush()

    async def clear(self) -> None:
        self._entries.clear()
        try:
            await self._store.delete(self.slot)
        except StorageIOError as e:
            logger.warning("Failed to delete offline cache slot: %s", e)

    async def keys(self) -> list[str]:
        """Keys of all live entries."""
        await self.purge_expired()
        return list(self._entries)

    async def purge_expired(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock.now()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
            await self._flush()
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock.now()):
            del self._entries[key]
            await self._flush()
            return None
        return entry

    async def _flush(self) -> None:
        blob = json.dumps([entry.to_dict() for entry in self._entries.values()])
        try:
            await self._store.write(self.slot, blob)
        except StorageIOError as e:
            logger.warning("Failed to persist offline cache: %s", e)
