"""
Durable string-keyed slots.

The cache and the request queue each own one slot holding a serialized
JSON blob. Slots are read once at startup and rewritten on every mutation.

Provides:
- FileSlotStore: one file per slot, atomic writes via temp file + rename
- MemorySlotStore: process-local slots for tests and ephemeral clients
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import aiofiles
import aiofiles.os

from .exceptions import StorageIOError

_SLOT_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_slot(slot: str) -> str:
    """Reject slot names that could escape the storage directory."""
    if not slot or not _SLOT_PATTERN.match(slot) or slot in {".", ".."}:
        raise ValueError(f"Invalid storage slot name: {slot!r}")
    return slot


class SlotStore(ABC):
    """Durable storage with independent string-keyed slots."""

    @abstractmethod
    async def read(self, slot: str) -> str | None:
        """Return the slot contents, or None if the slot was never written."""
        ...

    @abstractmethod
    async def write(self, slot: str, data: str) -> None:
        """Replace the slot contents."""
        ...

    @abstractmethod
    async def delete(self, slot: str) -> None:
        """Remove the slot. Deleting a missing slot is not an error."""
        ...


class MemorySlotStore(SlotStore):
    """Slots kept in a dict. Survives component restarts, not process restarts."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.slots: dict[str, str] = dict(initial or {})
        self.write_count = 0

    async def read(self, slot: str) -> str | None:
        return self.slots.get(validate_slot(slot))

    async def write(self, slot: str, data: str) -> None:
        self.slots[validate_slot(slot)] = data
        self.write_count += 1

    async def delete(self, slot: str) -> None:
        self.slots.pop(validate_slot(slot), None)


class FileSlotStore(SlotStore):
    """Slots stored as files under a base directory.

    Directory structure:
    {base_dir}/
      offline_cache.json
      request_queue.json

    Writes to the same slot are serialized so that snapshots land on disk in
    the order they were taken.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, slot: str) -> Path:
        return self.base_dir / f"{validate_slot(slot)}.json"

    def _lock(self, slot: str) -> asyncio.Lock:
        lock = self._locks.get(slot)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[slot] = lock
        return lock

    async def read(self, slot: str) -> str | None:
        path = self._path(slot)
        try:
            if not await aiofiles.os.path.exists(path):
                return None
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageIOError("read", slot, e) from e

    async def write(self, slot: str, data: str) -> None:
        path = self._path(slot)
        async with self._lock(slot):
            try:
                await aiofiles.os.makedirs(self.base_dir, exist_ok=True)
            except OSError as e:
                raise StorageIOError("create_directory", slot, e) from e

            fd, temp_path = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp_", suffix=".json")
            try:
                os.close(fd)
                async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                    await f.write(data)
                    await f.flush()
                    os.fsync(f.fileno())

                await aiofiles.os.replace(temp_path, path)
            except OSError as e:
                try:
                    await aiofiles.os.remove(temp_path)
                except OSError:
                    pass
                raise StorageIOError("write", slot, e) from e

    async def delete(self, slot: str) -> None:
        path = self._path(slot)
        async with self._lock(slot):
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                return
            except OSError as e:
                raise StorageIOError("delete", slot, e) from e
