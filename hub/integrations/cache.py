"""
Adapter-local entity cache.

Bounded TTL cache of provider entities, one namespace per entity kind
(accounts, transactions, ...), keyed by provider-native id. Mutations are
serialised by one asyncio.Lock so concurrent syncs for the same identity
converge instead of interleaving partial writes.

Only a performance optimisation: a miss always falls back to the provider.
"""
from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    stamp: float = 0.0  # sync start time that wrote the entry


class EntityCache:
    """LRU + TTL cache shared by all sync paths of one adapter instance."""

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: dict[str, float] | None = None,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = dict(ttl_seconds or {})
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _ttl(self, kind: str) -> float:
        return self.ttl_seconds.get(kind, self.default_ttl)

    def get(self, kind: str, entity_id: str) -> Optional[Any]:
        key = (kind, entity_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    def values(self, kind: str) -> list[Any]:
        """Live entries of one kind (expired ones are skipped, not evicted)."""
        now = self._clock()
        return [
            entry.value
            for (k, _), entry in self._entries.items()
            if k == kind and now < entry.expires_at
        ]

    async def put(self, kind: str, entity_id: str, value: Any, stamp: float = 0.0) -> bool:
        """Insert or replace. Returns False if a newer sync already wrote the entry."""
        async with self._lock:
            return self._put(kind, entity_id, value, stamp)

    async def put_many(
        self,
        kind: str,
        items: Iterable[tuple[str, Any]],
        stamp: float = 0.0,
    ) -> int:
        """Write a batch atomically with respect to other writers. Returns entries written."""
        async with self._lock:
            return sum(1 for entity_id, value in items if self._put(kind, entity_id, value, stamp))

    def _put(self, kind: str, entity_id: str, value: Any, stamp: float) -> bool:
        key = (kind, entity_id)
        existing = self._entries.get(key)
        if existing is not None and existing.stamp > stamp:
            # last writer wins by sync start time
            return False
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self._ttl(kind), stamp=stamp)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    async def invalidate(self, kind: str, entity_id: str | None = None) -> int:
        """Drop one entity, or every entity of ``kind``."""
        async with self._lock:
            if entity_id is not None:
                return 1 if self._entries.pop((kind, entity_id), None) is not None else 0
            keys = [key for key in self._entries if key[0] == kind]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.debug("Cleared %d cached entities", count)
