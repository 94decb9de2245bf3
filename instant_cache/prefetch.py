"""
Predictive prefetching.

Warms entries for keys that are likely to be requested soon. Prefetching
runs beside the foreground read path and never fails as a whole: every key
settles on its own.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from .core import PrefetchSummary
from .errors import StoreError
from .serialization import JsonCodec
from .store import CacheStore

logger = logging.getLogger("cache.prefetch")

Producer = Callable[[], Awaitable[Any]]
Resolver = Callable[[str], Awaitable[Any]]

DEFAULT_LOOKAHEAD = 2


def next_keys(current_key: str, ordered_keys: Sequence[str], lookahead: int = DEFAULT_LOOKAHEAD) -> List[str]:
    """
    Keys following current_key in ordered_keys, wrapping around.

    Returns an empty list if current_key is not in ordered_keys.
    """
    try:
        index = list(ordered_keys).index(current_key)
    except ValueError:
        return []

    total = len(ordered_keys)
    upcoming: List[str] = []
    for offset in range(1, lookahead + 1):
        candidate = ordered_keys[(index + offset) % total]
        if candidate != current_key and candidate not in upcoming:
            upcoming.append(candidate)
    return upcoming


class Prefetcher:
    """
    Concurrent, best-effort cache warmer.

    Usage:
        prefetcher = Prefetcher(store, concurrency=5)
        summary = await prefetcher.prefetch(["c", "d"], resolve=fetch_by_key)
    """

    def __init__(
        self,
        store: CacheStore,
        codec: Optional[JsonCodec] = None,
        enabled: bool = True,
        concurrency: int = 5,
        ttl_seconds: Optional[float] = None,
    ):
        """
        Initialize the prefetcher.

        Args:
            store: Store checked and written for each key
            codec: Codec used to serialize resolved values
            enabled: When False every call is a no-op
            concurrency: Max keys resolved at the same time
            ttl_seconds: TTL for warmed entries (store default if None)
        """
        self._store = store
        self._codec = codec or JsonCodec()
        self.enabled = enabled
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._ttl_seconds = ttl_seconds

    async def prefetch(self, keys: Iterable[str], resolve: Resolver) -> PrefetchSummary:
        """Warm every key in keys that is not cached yet, using resolve(key)."""
        items = [(key, _bind(resolve, key)) for key in dict.fromkeys(keys)]
        return await self._run(items)

    async def prefetch_resources(self, resources: Mapping[str, Producer]) -> PrefetchSummary:
        """Warm a set of keys that each carry their own producer."""
        return await self._run(list(resources.items()))

    async def prefetch_next(
        self,
        current_key: str,
        ordered_keys: Sequence[str],
        resolve: Resolver,
        lookahead: int = DEFAULT_LOOKAHEAD,
    ) -> PrefetchSummary:
        """Warm the keys that follow current_key in a known browsing order."""
        return await self.prefetch(next_keys(current_key, ordered_keys, lookahead), resolve)

    async def _run(self, items: List[Tuple[str, Producer]]) -> PrefetchSummary:
        if not self.enabled:
            logger.debug("Predictive prefetching disabled; skipping")
            return PrefetchSummary(enabled=False)

        summary = PrefetchSummary(planned=len(items))
        if not items:
            return summary

        results = await asyncio.gather(
            *(self._prefetch_key(key, producer) for key, producer in items),
            return_exceptions=True,
        )
        for (key, _), outcome in zip(items, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Preload failed for {key}: {outcome}")
                summary.failed += 1
                summary.errors.append(f"{key}: {outcome}")
            elif outcome == "loaded":
                summary.loaded += 1
            else:
                summary.skipped += 1

        logger.info(
            f"Prefetch completed: planned={summary.planned} loaded={summary.loaded} "
            f"skipped={summary.skipped} failed={summary.failed}"
        )
        return summary

    async def _prefetch_key(self, key: str, producer: Producer) -> str:
        async with self._semaphore:
            try:
                cached = await self._store.get(key)
            except StoreError as e:
                logger.warning(f"Store unavailable while prefetching {key}, fetching: {e}")
                cached = None

            if cached is not None:
                logger.debug(f"Prefetch skipped, already cached: {key}")
                return "skipped"

            value = await producer()
            await self._store.set(key, self._codec.encode(value), self._ttl_seconds)
            logger.debug(f"Prefetched {key}")
            return "loaded"


def _bind(resolve: Resolver, key: str) -> Producer:
    return lambda: resolve(key)
