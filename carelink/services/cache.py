"""
CacheStore - TTL cache persisted through a PersistentStore.

Features:
- Namespaced keys (`cache_{key}`), with read/scan/clear support for the
  legacy `api_cache_{key}` layout
- TTL per entry, expired entries deleted lazily on read
- Size budget: expired entries are purged before a write that would exceed it
- Store failures are logged and treated as a miss / no-op
"""

import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from carelink.datastore.store import PersistentStore

CACHE_PREFIX = "cache_"
LEGACY_PREFIX = "api_cache_"

DEFAULT_TTL = timedelta(minutes=5)
DEFAULT_MAX_SIZE = 50 * 1024 * 1024  # 50MB


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


@dataclass
class CacheEntry:
    """A single cache entry with metadata. Timestamps are epoch milliseconds."""

    key: str
    data: Any
    created_at: int
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    @property
    def created(self) -> datetime:
        return datetime.fromtimestamp(self.created_at / 1000)

    @property
    def expires(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at / 1000)

    def dumps(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "timestamp": self.created_at,
                "expiry": self.expires_at - self.created_at,
            }
        )

    @classmethod
    def loads(cls, key: str, raw: str) -> "CacheEntry":
        """Parse either the current or the legacy layout."""
        item = json.loads(raw)
        created_at = int(item["timestamp"])
        if "expiresAt" in item:
            expires_at = int(item["expiresAt"])
        else:
            expires_at = created_at + int(item["expiry"])
        return cls(key=key, data=item.get("data"), created_at=created_at, expires_at=expires_at)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    purged: int = 0
    item_count: int = 0
    total_size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "purged": self.purged,
            "item_count": self.item_count,
            "total_size": self.total_size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheStore:
    """
    TTL cache over a persistent key/value store.

    Usage:
        cache = CacheStore(store)

        profile = await cache.get("profile")
        if profile is None:
            profile = await fetch_profile()
            await cache.set("profile", profile, ttl=timedelta(minutes=15))
    """

    def __init__(
        self,
        store: PersistentStore,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
        debug: bool = False,
    ):
        self._store = store
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    async def get(self, key: str) -> Any | None:
        """Return cached data, or None on miss/expiry/failure."""
        entry = await self.get_entry(key)
        return entry.data if entry else None

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the full entry (with timestamps), or None."""
        try:
            for storage_key in (CACHE_PREFIX + key, LEGACY_PREFIX + key):
                raw = await self._store.get(storage_key)
                if raw is None:
                    continue

                entry = CacheEntry.loads(key, raw)
                if entry.is_expired(_now_ms(self._clock)):
                    await self._store.remove(storage_key)
                    self._stats.misses += 1
                    self._log(f"EXPIRED: {key[:50]}")
                    return None

                self._stats.hits += 1
                self._log(f"HIT: {key[:50]}")
                return entry

            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return None

        except Exception as e:
            logger.error(f"Cache get error for '{key}': {e}")
            return None

    async def set(self, key: str, data: Any, ttl: timedelta | None = None) -> None:
        """
        Store data under `key`.

        Args:
            key: Cache key (without namespace prefix)
            data: JSON-serializable payload
            ttl: Time to live (uses default if not specified)
        """
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl.total_seconds() <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")

        try:
            now = _now_ms(self._clock)
            entry = CacheEntry(
                key=key,
                data=data,
                created_at=now,
                expires_at=now + int(ttl.total_seconds() * 1000),
            )
            serialized = entry.dumps()

            current_size = await self._storage_size()
            if current_size + len(serialized) > self._max_size:
                self._log(
                    f"BUDGET: {current_size + len(serialized)} > {self._max_size}, purging expired"
                )
                await self.purge_expired()

            await self._store.set(CACHE_PREFIX + key, serialized)
            self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

        except Exception as e:
            logger.error(f"Cache set error for '{key}': {e}")

    async def remove(self, key: str) -> None:
        """Delete a key in both layouts."""
        try:
            await self._store.remove_many([CACHE_PREFIX + key, LEGACY_PREFIX + key])
            self._log(f"DELETE: {key[:50]}")
        except Exception as e:
            logger.error(f"Cache remove error for '{key}': {e}")

    async def clear(self) -> None:
        """Remove every cache entry, current and legacy."""
        try:
            cache_keys = await self._cache_storage_keys()
            await self._store.remove_many(cache_keys)
            self._log(f"CLEAR: {len(cache_keys)} entries removed")
        except Exception as e:
            logger.error(f"Cache clear error: {e}")

    async def keys(self) -> list[str]:
        """List cached keys without their namespace prefix."""
        try:
            result: list[str] = []
            for storage_key in await self._cache_storage_keys():
                key = _strip_prefix(storage_key)
                if key not in result:
                    result.append(key)
            return result
        except Exception as e:
            logger.error(f"Cache keys error: {e}")
            return []

    async def purge_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        removed = 0
        now = _now_ms(self._clock)
        try:
            for storage_key in await self._cache_storage_keys():
                raw = await self._store.get(storage_key)
                if raw is None:
                    continue
                try:
                    entry = CacheEntry.loads(_strip_prefix(storage_key), raw)
                except (ValueError, KeyError, TypeError):
                    # Unreadable entries can never be served
                    await self._store.remove(storage_key)
                    removed += 1
                    continue
                if entry.expires_at < now:
                    await self._store.remove(storage_key)
                    removed += 1
        except Exception as e:
            logger.error(f"Failed to purge expired cache entries: {e}")

        if removed:
            self._stats.purged += removed
            self._log(f"PURGE: {removed} expired entries removed")
        return removed

    async def get_stats(self) -> CacheStats:
        """Get cache statistics, including current item count and size."""
        try:
            cache_keys = await self._cache_storage_keys()
            size = 0
            for storage_key in cache_keys:
                raw = await self._store.get(storage_key)
                if raw:
                    size += len(raw)
            self._stats.item_count = len(cache_keys)
            self._stats.total_size = size
        except Exception as e:
            logger.error(f"Failed to get cache stats: {e}")
        self._stats.max_size = self._max_size
        return self._stats

    async def _cache_storage_keys(self) -> list[str]:
        return [
            k
            for k in await self._store.keys()
            if k.startswith(CACHE_PREFIX) or k.startswith(LEGACY_PREFIX)
        ]

    async def _storage_size(self) -> int:
        size = 0
        for storage_key in await self._store.keys():
            raw = await self._store.get(storage_key)
            if raw:
                size += len(raw)
        return size

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


def _strip_prefix(storage_key: str) -> str:
    if storage_key.startswith(LEGACY_PREFIX):
        return storage_key[len(LEGACY_PREFIX) :]
    return storage_key[len(CACHE_PREFIX) :]
