"""
CacheManager - key-addressed store of decoded entities with TTL metadata.

Features:
- Memory tier in LRU order with an entry budget
- Fresh / stale-but-usable classification per entry
- Exact-key and prefix invalidation
- Optional persistent tier (CacheStore) holding the wire payload, so cached
  data survives restarts and can be served while offline

Locking: reads only touch the memory dict synchronously and never wait on
the writer lock; put / invalidate / evict / clear are serialised by a single
coarse asyncio.Lock. A read racing an eviction of the same key simply sees
a miss and falls through to the network.

Every invalidate / clear bumps a generation counter. Loaders read it before
going to the network and pass it back to put(); a write whose generation
is older than the current one is dropped, so data fetched before a
mutation cannot repopulate the keys the mutation invalidated.
"""

import asyncio
import json
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Protocol, TypeVar, assert_never, runtime_checkable

from loguru import logger

from twin_client.services.errors import ErrorKind
from twin_client.services.result import Failure, Loading, Result, Success

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    value: T
    fetched_at: datetime
    ttl: timedelta
    etag: str | None = None

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or _utcnow()) - self.fetched_at

    def is_fresh(self, now: datetime | None = None) -> bool:
        """Fresh iff age < ttl."""
        return self.age(now) < self.ttl

    def is_stale(self, now: datetime | None = None) -> bool:
        return not self.is_fresh(now)


@dataclass(frozen=True)
class StoredRecord:
    """Persistent-tier representation of an entry."""

    key: str
    payload: str  # JSON wire payload
    fetched_at: datetime
    ttl_seconds: float
    etag: str | None = None


@runtime_checkable
class CacheStore(Protocol):
    """Persistent key-value boundary with prefix enumeration."""

    async def get(self, key: str) -> StoredRecord | None: ...

    async def put(self, record: StoredRecord) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self, prefix: str = "") -> list[str]: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def clear(self) -> None: ...


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    restored: int = 0  # entries loaded back from the persistent tier
    size: int = 0
    max_entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "restored": self.restored,
            "size": self.size,
            "max_entries": self.max_entries,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheManager:
    """
    Usage:
        cache = CacheManager(max_entries=200, default_ttl=timedelta(minutes=5))

        generation = cache.generation
        entry = await cache.get(key)
        if entry and entry.is_fresh():
            return entry.value

        value = await fetch()
        await cache.put(key, value, generation=generation)
    """

    def __init__(
        self,
        max_entries: int = 200,
        default_ttl: timedelta = timedelta(minutes=5),
        store: CacheStore | None = None,
        debug: bool = False,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._memory: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._store = store
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()
        self._generation = 0

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    @property
    def generation(self) -> int:
        """Invalidation counter; capture before loading, pass to put()."""
        return self._generation

    def __contains__(self, key: str) -> bool:
        return key in self._memory

    def __len__(self) -> int:
        return len(self._memory)

    def keys(self) -> list[str]:
        """Memory-tier keys, least recently used first."""
        return list(self._memory)

    async def get(
        self,
        key: str,
        decode: Callable[[Any], Result[T]] | None = None,
    ) -> CacheEntry[T] | None:
        """
        Look up an entry, fresh or stale.

        On a memory miss with a persistent tier configured, the stored
        payload is decoded with `decode` and promoted into memory. Records
        that no longer decode are dropped.
        """
        entry = self._memory.get(key)
        if entry is not None:
            self._memory.move_to_end(key)  # LRU touch
            self._record_hit(entry)
            return entry

        if self._store is None or decode is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:60]}")
            return None

        restored = await self._restore(key, decode, self._generation)
        if restored is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:60]}")
            return None

        self._stats.restored += 1
        self._record_hit(restored)
        return restored

    async def _restore(
        self, key: str, decode: Callable[[Any], Result[T]], generation: int
    ) -> CacheEntry[T] | None:
        assert self._store is not None
        try:
            record = await self._store.get(key)
        except Exception as e:
            logger.warning(f"Persistent cache read failed for {key[:60]}: {e}")
            return None
        if record is None:
            return None

        try:
            payload = json.loads(record.payload)
        except ValueError:
            decoded: Result[T] = Failure.of(
                ErrorKind.DECODE_ERROR, "stored payload is not JSON"
            )
        else:
            decoded = decode(payload)

        if isinstance(decoded, Success):
            entry = CacheEntry(
                key=key,
                value=decoded.value,
                fetched_at=record.fetched_at,
                ttl=timedelta(seconds=record.ttl_seconds),
                etag=record.etag,
            )
        elif isinstance(decoded, Failure):
            logger.warning(
                f"Dropping persisted cache entry {key[:60]}: {decoded.message}"
            )
            await self._store_call("delete", key)
            return None
        elif isinstance(decoded, Loading):
            return None
        else:
            assert_never(decoded)

        async with self._lock:
            if self._generation != generation:
                self._log(f"RESTORE DROPPED: {key[:60]} invalidated while reading")
                return None
            # a concurrent put wins over the restored copy
            current = self._memory.get(key)
            if current is not None:
                return current
            self._memory[key] = entry
            await self._drop_evicted(self._evict_locked())
        return entry

    def _record_hit(self, entry: CacheEntry[Any]) -> None:
        if entry.is_fresh():
            self._stats.hits += 1
            self._log(f"HIT: {entry.key[:60]}")
        else:
            self._stats.stale_hits += 1
            self._log(f"STALE HIT: {entry.key[:60]}")

    async def put(
        self,
        key: str,
        value: T,
        ttl: timedelta | None = None,
        *,
        payload: Any = None,
        etag: str | None = None,
        generation: int | None = None,
    ) -> CacheEntry[T] | None:
        """
        Store a value, overwriting any previous entry for the key.

        Args:
            key: Cache key
            value: Decoded entity
            ttl: Freshness window (default if not specified)
            payload: JSON-serialisable wire payload for the persistent tier
            etag: Validator for conditional revalidation
            generation: `generation` as read before the value was loaded

        Returns:
            The stored entry, or None when an invalidation happened after
            `generation` was read and the write was dropped
        """
        entry = CacheEntry(
            key=key,
            value=value,
            fetched_at=_utcnow(),
            ttl=ttl if ttl is not None else self._default_ttl,
            etag=etag,
        )

        async with self._lock:
            if generation is not None and generation != self._generation:
                self._log(f"SET DROPPED: {key[:60]} invalidated while loading")
                return None
            self._memory[key] = entry
            self._memory.move_to_end(key)
            evicted = self._evict_locked()
            self._log(f"SET: {key[:60]} (TTL: {entry.ttl.total_seconds()}s)")

            if self._store is not None and payload is not None:
                await self._store_call(
                    "put",
                    StoredRecord(
                        key=key,
                        payload=json.dumps(payload),
                        fetched_at=entry.fetched_at,
                        ttl_seconds=entry.ttl.total_seconds(),
                        etag=etag,
                    ),
                )
            elif self._store is not None:
                # an older persisted payload must not outlive this value
                await self._store_call("delete", key)
            await self._drop_evicted(evicted)
        return entry

    async def touch(
        self, key: str, generation: int | None = None
    ) -> CacheEntry[Any] | None:
        """Mark an entry as just fetched (after a 304 revalidation)."""
        async with self._lock:
            if generation is not None and generation != self._generation:
                return None
            entry = self._memory.get(key)
            if entry is None:
                return None
            entry = replace(entry, fetched_at=_utcnow())
            self._memory[key] = entry
            self._memory.move_to_end(key)

            if self._store is not None:
                record = await self._store_call("get", key)
                if isinstance(record, StoredRecord):
                    await self._store_call(
                        "put", replace(record, fetched_at=entry.fetched_at)
                    )
            self._log(f"TOUCH: {key[:60]}")
            return entry

    async def invalidate(self, key: str, *, prefix: bool = False) -> int:
        """
        Remove the entry for `key`, or every entry whose key starts with it.

        Returns:
            Number of memory entries removed
        """
        async with self._lock:
            self._generation += 1
            if prefix:
                doomed = [k for k in self._memory if k.startswith(key)]
            else:
                doomed = [key] if key in self._memory else []
            for k in doomed:
                del self._memory[k]

            if self._store is not None:
                if prefix:
                    await self._store_call("delete_prefix", key)
                else:
                    await self._store_call("delete", key)

            self._stats.invalidations += len(doomed)
            if doomed:
                kind = "prefix" if prefix else "key"
                self._log(f"INVALIDATE {kind}: {len(doomed)} entries for '{key}'")
            return len(doomed)

    async def evict_if_over_capacity(self) -> int:
        """Evict least recently used entries beyond the entry budget."""
        async with self._lock:
            evicted = self._evict_locked()
            await self._drop_evicted(evicted)
            return len(evicted)

    def _evict_locked(self) -> list[str]:
        evicted = []
        while len(self._memory) > self._max_entries:
            oldest_key, _ = self._memory.popitem(last=False)
            evicted.append(oldest_key)
            self._stats.evictions += 1
            self._log(f"EVICT: {oldest_key[:60]}")
        return evicted

    async def _drop_evicted(self, keys: list[str]) -> None:
        # the persistent tier mirrors the memory budget
        if self._store is None:
            return
        for key in keys:
            await self._store_call("delete", key)

    async def clear(self) -> None:
        """Clear all cache entries, including the persistent tier."""
        async with self._lock:
            self._generation += 1
            count = len(self._memory)
            self._memory.clear()
            if self._store is not None:
                await self._store_call("clear")
            self._log(f"CLEAR: {count} entries removed")

    async def _store_call(self, method: str, *args: Any) -> Any:
        """Call the persistent tier; failures degrade to memory-only."""
        assert self._store is not None
        try:
            return await getattr(self._store, method)(*args)
        except Exception as e:
            logger.warning(f"Persistent cache {method} failed: {e}")
            return None

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_entries = self._max_entries
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")
