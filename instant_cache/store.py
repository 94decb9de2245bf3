"""
Durable key -> entry persistence over a storage backend.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Callable, Optional

from .backends import StorageBackend
from .core import DEFAULT_TTL_SECONDS, AnalyticsSnapshot, CacheEntry, utcnow
from .errors import StoreError

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Dumb key -> entry mapping with an initialize-once lifecycle.

    - get() returns values regardless of staleness; freshness is the
      caller's concern
    - set() stamps created_at with the store clock
    - every backend failure surfaces as StoreError
    """

    def __init__(
        self,
        backend: StorageBackend,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            backend: Persistent string mapping the entries are written to
            default_ttl_seconds: TTL applied when set() is not given one
            clock: Source of "now", injectable for tests
        """
        self._backend = backend
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def now(self) -> datetime:
        return self._clock()

    async def initialize(self) -> None:
        """Prepare the backend once. Every access path awaits this."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self._backend.initialize()
            except Exception as e:
                raise StoreError("initialize", str(e)) from e
            self._initialized = True
            logger.debug("Cache store initialized")

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Get the full entry for key, fresh or stale."""
        await self.initialize()
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            raise StoreError("get", str(e), key=key) from e

        if raw is None:
            return None

        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError("decode", f"Malformed entry: {e}", key=key) from e

    async def get(self, key: str) -> Optional[str]:
        """Get the serialized value for key, or None."""
        entry = await self.get_entry(key)
        return entry.serialized_value if entry is not None else None

    async def set(
        self,
        key: str,
        serialized_value: str,
        ttl_seconds: Optional[float] = None,
    ) -> CacheEntry:
        """Upsert key, resetting its created_at to now."""
        await self.initialize()
        entry = CacheEntry(
            key=key,
            serialized_value=serialized_value,
            created_at=self._clock(),
            ttl_seconds=self.default_ttl_seconds if ttl_seconds is None else ttl_seconds,
        )
        try:
            await self._backend.set(key, json.dumps(entry.to_dict()))
        except Exception as e:
            raise StoreError("set", str(e), key=key) from e
        return entry

    async def clear_all(self) -> None:
        """Remove every entry."""
        await self.initialize()
        try:
            await self._backend.clear_all()
        except Exception as e:
            raise StoreError("clear_all", str(e)) from e
        logger.info("Cleared all cache entries")

    async def analytics(self) -> Optional[AnalyticsSnapshot]:
        """Best-effort aggregate snapshot from the backend."""
        await self.initialize()
        try:
            return await self._backend.analytics()
        except Exception as e:
            raise StoreError("analytics", str(e)) from e
