"""Tests for the offline cache."""

from __future__ import annotations

import json

import pytest

from resilient_client import ManualClock, MemorySlotStore, OfflineCache, SerializationError


@pytest.fixture
async def cache(store: MemorySlotStore, clock: ManualClock) -> OfflineCache:
    cache = OfflineCache(store, clock=clock)
    await cache.load()
    return cache


class TestStoreAndGet:
    """Tests for basic cache reads and writes."""

    async def test_round_trip(self, cache: OfflineCache) -> None:
        """Test that a stored value comes back equal."""
        await cache.store("reports-u1", {"score": 3, "tags": ["a"]}, ttl_minutes=30)

        assert await cache.get("reports-u1") == {"score": 3, "tags": ["a"]}
        assert await cache.has("reports-u1") is True

    async def test_missing_key(self, cache: OfflineCache) -> None:
        assert await cache.get("nope") is None
        assert await cache.has("nope") is False

    async def test_values_are_copied(self, cache: OfflineCache) -> None:
        """Test that neither the stored nor the returned value aliases the cache."""
        value = {"items": [1, 2]}
        await cache.store("k", value)
        value["items"].append(3)

        fetched = await cache.get("k")
        fetched["items"].append(4)

        assert await cache.get("k") == {"items": [1, 2]}

    async def test_overwrite(self, cache: OfflineCache) -> None:
        await cache.store("k", 1)
        await cache.store("k", 2)

        assert await cache.get("k") == 2
        assert len(cache) == 1

    async def test_stored_none_counts_as_present(self, cache: OfflineCache) -> None:
        await cache.store("k", None)

        assert await cache.has("k") is True
        assert await cache.get("k") is None

    async def test_non_serializable_value_rejected(self, cache: OfflineCache) -> None:
        with pytest.raises(SerializationError):
            await cache.store("k", {"when": object()})

        assert await cache.has("k") is False

    async def test_non_positive_ttl_rejected(self, cache: OfflineCache) -> None:
        with pytest.raises(ValueError, match="ttl_minutes"):
            await cache.store("k", 1, ttl_minutes=0)


class TestExpiration:
    """Tests for TTL handling."""

    async def test_ttl_boundary(self, cache: OfflineCache, clock: ManualClock) -> None:
        """Test that an entry is served until its expiry instant and not after."""
        await cache.store("k", "v", ttl_minutes=30)

        await clock.advance(30 * 60 - 1)
        assert await cache.get("k") == "v"

        await clock.advance(1)
        assert await cache.get("k") is None
        assert await cache.has("k") is False

    async def test_expired_entry_removed_on_access(
        self, cache: OfflineCache, clock: ManualClock, store: MemorySlotStore
    ) -> None:
        await cache.store("k", "v", ttl_minutes=1)
        await clock.advance(61)

        assert await cache.get("k") is None
        assert len(cache) == 0
        assert json.loads(store.slots["offline_cache"]) == []

    async def test_no_ttl_never_expires(self, cache: OfflineCache, clock: ManualClock) -> None:
        await cache.store("k", "v")
        await clock.advance(365 * 24 * 3600)

        assert await cache.get("k") == "v"

    async def test_purge_expired(self, cache: OfflineCache, clock: ManualClock) -> None:
        await cache.store("short", 1, ttl_minutes=1)
        await cache.store("long", 2, ttl_minutes=60)
        await cache.store("forever", 3)
        await clock.advance(120)

        assert await cache.purge_expired() == 1
        assert sorted(await cache.keys()) == ["forever", "long"]


class TestPersistence:
    """Tests for durable storage behavior."""

    async def test_survives_reload(self, store: MemorySlotStore, clock: ManualClock) -> None:
        first = OfflineCache(store, clock=clock)
        await first.store("k", {"a": 1}, ttl_minutes=30)

        second = OfflineCache(store, clock=clock)
        assert await second.load() == 1
        assert await second.get("k") == {"a": 1}

    async def test_load_drops_expired_entries(self, store: MemorySlotStore, clock: ManualClock) -> None:
        first = OfflineCache(store, clock=clock)
        await first.store("old", 1, ttl_minutes=1)
        await first.store("new", 2, ttl_minutes=10)
        await clock.advance(5 * 60)

        second = OfflineCache(store, clock=clock)
        assert await second.load() == 1
        assert await second.keys() == ["new"]

    @pytest.mark.parametrize(
        "blob",
        [
            "{not json",
            '{"not": "a list"}',
            "[1]",
            "[null]",
            '[{"key": "k"}]',
            '[{"key": "k", "stored_at": "yesterday"}]',
        ],
    )
    async def test_corrupt_blob_loads_empty(self, clock: ManualClock, blob: str) -> None:
        store = MemorySlotStore({"offline_cache": blob})
        cache = OfflineCache(store, clock=clock)

        assert await cache.load() == 0
        await cache.store("k", 1)
        assert await cache.get("k") == 1

    async def test_naive_timestamps_read_as_utc(self, clock: ManualClock) -> None:
        blob = json.dumps(
            [
                {
                    "key": "live",
                    "value": 1,
                    "stored_at": "2024-01-01T00:00:00",
                    "expires_at": "2024-01-01T00:10:00",
                },
                {
                    "key": "gone",
                    "value": 2,
                    "stored_at": "2023-12-31T22:00:00",
                    "expires_at": "2023-12-31T23:00:00",
                },
            ]
        )
        cache = OfflineCache(MemorySlotStore({"offline_cache": blob}), clock=clock)

        assert await cache.load() == 1
        assert await cache.get("live") == 1

        await clock.advance(10 * 60)
        assert await cache.get("live") is None

    async def test_remove(self, cache: OfflineCache, store: MemorySlotStore) -> None:
        await cache.store("a", 1)
        await cache.store("b", 2)
        await cache.remove("a")

        assert await cache.keys() == ["b"]
        assert [item["key"] for item in json.loads(store.slots["offline_cache"])] == ["b"]

    async def test_clear_deletes_slot(self, cache: OfflineCache, store: MemorySlotStore) -> None:
        await cache.store("a", 1)
        await cache.clear()

        assert len(cache) == 0
        assert "offline_cache" not in store.slots
