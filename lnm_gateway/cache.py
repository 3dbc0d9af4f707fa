"""In-process response cache with a time-to-live per resource.

Upstream values change at very different speeds (the spot rate every few
seconds, the fee schedule a few times a year), so every entry carries its own
TTL instead of a global one.

Public market data is shared by every caller in the process. User-specific
data must be keyed with :meth:`CacheKey.private`, which partitions entries by
account; private keys without an owner are rejected.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

from .logging_setup import logger

# Default TTL classes (seconds)
TTL_TICKER = 30.0
TTL_FUNDING = 60.0
TTL_FEES = 300.0
TTL_ACCOUNT = 10.0
TTL_SNAPSHOT = 30.0
TTL_DEGRADED = 5.0

PUBLIC_SCOPE = "public"


class CacheKey(NamedTuple):
    resource: str
    scope: str = PUBLIC_SCOPE

    @classmethod
    def public(cls, resource: str) -> "CacheKey":
        return cls(resource, PUBLIC_SCOPE)

    @classmethod
    def private(cls, resource: str, owner: str) -> "CacheKey":
        if not owner or owner == PUBLIC_SCOPE:
            raise ValueError("private cache keys need an owner identity")
        return cls(resource, f"account:{owner}")

    @property
    def is_private(self) -> bool:
        return self.scope != PUBLIC_SCOPE


@dataclass
class CacheEntry:
    key: CacheKey
    value: Any
    written_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.written_at <= self.ttl

    def age(self, now: float) -> float:
        return now - self.written_at


class TieredCache:
    """TTL cache with at-most-one in-flight compute per key."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}
        # bumped on invalidation; a compute started under an older generation is not stored
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return the cached value if still valid, else None."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.value
        return None

    def set(self, key: CacheKey, value: Any, ttl: float) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self._entries[key] = CacheEntry(key=key, value=value, written_at=self._clock(), ttl=ttl)

    def _fresh(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry
        return None

    async def get_or_compute(self, key: CacheKey, ttl: float, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key`` or compute, store and return it.

        ``compute`` runs only on a miss or expiry. Concurrent callers for the
        same key wait for the first compute instead of issuing their own.
        Exceptions from ``compute`` propagate and nothing is stored.
        """
        entry = self._fresh(key)
        if entry is not None:
            self.hits += 1
            return entry.value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._fresh(key)
            if entry is not None:
                self.hits += 1
                return entry.value
            self.misses += 1
            logger.debug(f"Cache miss | resource={key.resource} private={key.is_private}")
            generation = self._generation(key.scope)
            value = await compute()
            if self._generation(key.scope) == generation:
                self.set(key, value, ttl)
            else:
                logger.debug(f"Cache write dropped | resource={key.resource} reason=invalidated during compute")
            return value

    def _generation(self, scope: str) -> tuple:
        return self._epoch, self._generations.get(scope, 0)

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_scope(self, scope: str) -> int:
        self._generations[scope] = self._generations.get(scope, 0) + 1
        stale = [key for key in self._entries if key.scope == scope]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate_owner(self, owner: str) -> int:
        """Drop every private entry of one account (after it mutates state)."""
        return self.invalidate_scope(CacheKey.private("_", owner).scope)

    def clear(self) -> None:
        self._epoch += 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        now = self._clock()
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "public_ages": {
                key.resource: round(entry.age(now), 3)
                for key, entry in sorted(self._entries.items())
                if not key.is_private
            },
            "private_entries": sum(1 for key in self._entries if key.is_private),
        }
