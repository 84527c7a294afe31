# storage/bounded_store.py
"""Capacity-bounded, partitioned stores with newest-first reads.

Each partition (usually ``project:chapter``) keeps at most ``capacity``
entries. Inserts evict the oldest entries synchronously, and every
insert-then-evict runs under the partition's lock so concurrent writers
cannot interleave.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

EntryT = TypeVar("EntryT", bound=BaseModel)


@runtime_checkable
class KeyValueStore(Protocol):
    """Async key-value persistence. No cross-key transactions are assumed."""

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def query_by_prefix(self, prefix: str) -> list[Any]: ...


class InMemoryKeyValueStore:
    """Dictionary-backed ``KeyValueStore``."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def query_by_prefix(self, prefix: str) -> list[Any]:
        return [v for k, v in self._data.items() if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


def _unwrap(raw: Any) -> tuple[int, Any]:
    """Split a stored record into ``(seq, entry payload)``.

    Bare entry documents without a sequence sort as the oldest.
    """
    if isinstance(raw, dict) and "entry" in raw and isinstance(raw.get("seq"), int):
        return raw["seq"], raw["entry"]
    return 0, raw


class BoundedStore(Generic[EntryT]):
    """Append-only store with FIFO eviction per partition.

    Entries need ``id`` and ``timestamp`` attributes. With a ``backend`` each
    entry is also written under ``<namespace>:<partition>:<id>`` as
    ``{"seq": n, "entry": {...}}`` and a partition is loaded from the backend
    the first time it is touched. ``seq`` increases strictly per partition,
    so entries written within the same millisecond reload in insertion order.
    """

    def __init__(
        self,
        namespace: str,
        entry_type: type[EntryT],
        capacity: int,
        backend: KeyValueStore | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.namespace = namespace
        self.entry_type = entry_type
        self.capacity = capacity
        self.backend = backend
        self._partitions: dict[str, deque[EntryT]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sequences: dict[str, int] = {}

    def _lock(self, partition: str) -> asyncio.Lock:
        lock = self._locks.get(partition)
        if lock is None:
            lock = self._locks[partition] = asyncio.Lock()
        return lock

    def _prefix(self, partition: str) -> str:
        return f"{self.namespace}:{partition}:"

    def _key(self, partition: str, entry_id: str) -> str:
        return f"{self._prefix(partition)}{entry_id}"

    def _entry_key(self, partition: str, entry: EntryT) -> str:
        return self._key(partition, getattr(entry, "id"))

    async def _entries(self, partition: str) -> deque[EntryT]:
        """The partition's entries, newest first. Caller holds the lock."""
        entries = self._partitions.get(partition)
        if entries is not None:
            return entries
        entries = deque()
        if self.backend is not None:
            loaded: list[tuple[int, EntryT]] = []
            for raw in await self.backend.query_by_prefix(self._prefix(partition)):
                seq, payload = _unwrap(raw)
                try:
                    loaded.append((seq, self.entry_type.model_validate(payload)))
                except ValidationError as exc:
                    logger.warning(
                        "Skipping unreadable stored entry",
                        namespace=self.namespace,
                        partition=partition,
                        error=str(exc),
                    )
            loaded.sort(
                key=lambda item: (item[0], getattr(item[1], "timestamp", 0)),
                reverse=True,
            )
            entries.extend(entry for _, entry in loaded)
            if loaded:
                self._sequences[partition] = loaded[0][0]
        self._partitions[partition] = entries
        return entries

    def _next_seq(self, partition: str) -> int:
        seq = self._sequences.get(partition, 0) + 1
        self._sequences[partition] = seq
        return seq

    async def add(self, partition: str, entry: EntryT) -> list[EntryT]:
        """Insert ``entry`` as the newest item and return whatever was evicted."""
        async with self._lock(partition):
            entries = await self._entries(partition)
            entries.appendleft(entry)
            evicted: list[EntryT] = []
            while len(entries) > self.capacity:
                evicted.append(entries.pop())
            if self.backend is not None:
                await self.backend.put(
                    self._entry_key(partition, entry),
                    {
                        "seq": self._next_seq(partition),
                        "entry": entry.model_dump(mode="json"),
                    },
                )
                for old in evicted:
                    await self.backend.delete(self._entry_key(partition, old))
        if evicted:
            logger.debug(
                f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}",
                namespace=self.namespace,
                partition=partition,
            )
        return evicted

    async def list(self, partition: str) -> list[EntryT]:
        """Entries of ``partition``, newest first."""
        async with self._lock(partition):
            return list(await self._entries(partition))

    async def get(self, partition: str, entry_id: str) -> EntryT | None:
        for entry in await self.list(partition):
            if getattr(entry, "id") == entry_id:
                return entry
        return None

    async def remove(self, partition: str, entry_id: str) -> bool:
        async with self._lock(partition):
            entries = await self._entries(partition)
            for entry in entries:
                if getattr(entry, "id") == entry_id:
                    entries.remove(entry)
                    if self.backend is not None:
                        await self.backend.delete(self._key(partition, entry_id))
                    return True
        return False

    async def clear(self, partition: str) -> int:
        """Drop every entry of ``partition`` and return how many there were."""
        async with self._lock(partition):
            entries = await self._entries(partition)
            count = len(entries)
            if self.backend is not None:
                for entry in entries:
                    await self.backend.delete(self._entry_key(partition, entry))
            entries.clear()
        return count

    def partitions(self) -> list[str]:
        """Partitions touched so far in this process."""
        return [p for p, entries in self._partitions.items() if entries]
