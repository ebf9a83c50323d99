"""
Injectable time-to-live caches.

Components that memoize upstream data (the API client, the aggregators)
receive one of these through their constructor instead of keeping module
level dictionaries. Both implementations share the same coroutine interface:
`get`, `set`, `invalidate`, `clear` and `cleanup`.
"""

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from config.settings import CACHE_TIMEOUT, MAX_CACHE_SIZE
from utils.constants import CACHE_KEY_HASH_ALGORITHM

logger = logging.getLogger("pokedex.cache")


class TTLCache(Protocol):
    ttl: float

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    async def invalidate(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def cleanup(self) -> int: ...


def hash_cache_key(key: str) -> str:
    """
    Generate a fixed-length cache key.

    Args:
        key: Original cache key string (usually a URL).

    Returns:
        Hex digest of the key.
    """
    hash_obj = hashlib.new(CACHE_KEY_HASH_ALGORITHM)
    hash_obj.update(key.encode("utf-8"))
    return hash_obj.hexdigest()


class MemoryTTLCache:
    """
    Process-local cache with per-entry expiry and a size bound.

    When full, the entry closest to expiry is evicted first.
    """

    def __init__(self, ttl: float = CACHE_TIMEOUT, max_size: int = MAX_CACHE_SIZE):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            lifetime = self.ttl if ttl is None else ttl
            self._entries[key] = (time.monotonic() + lifetime, value)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def cleanup(self) -> int:
        async with self._lock:
            now = time.monotonic()
            expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)


class DatabaseTTLCache:
    """
    Cache backed by the store's `api_cache` table.

    Keys are hashed before storage. Size management (LRU eviction) is done
    by the database layer on insert.
    """

    def __init__(self, db, ttl: float = CACHE_TIMEOUT, max_size: int = MAX_CACHE_SIZE):
        self.db = db
        self.ttl = ttl
        self.max_size = max_size

    async def get(self, key: str) -> Optional[Any]:
        return await self.db.get_cache(hash_cache_key(key), self.ttl)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        # Per-entry lifetimes are not stored; the table uses one TTL.
        await self.db.set_cache(hash_cache_key(key), value, self.max_size)

    async def invalidate(self, key: str) -> None:
        await self.db.delete_cache(hash_cache_key(key))

    async def clear(self) -> None:
        await self.db.clear_cache()

    async def cleanup(self) -> int:
        deleted = await self.db.cleanup_expired_cache(self.ttl)
        if deleted:
            logger.debug(f"Expired {deleted} raw cache entries")
        return deleted
