"""
Main cache orchestration: per-key loads with stale-while-revalidate.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from config.settings import Settings, settings as default_settings
from .backends import SqlBackend, StorageBackend
from .cancellation import CancellationToken
from .core import CacheEntry, CacheMetrics, CacheOptions, CacheSource, CacheState, PrefetchSummary, utcnow
from .errors import CancellationError, ProducerError, StoreError
from .metrics import DEFAULT_POLL_INTERVAL_SECONDS, AnalyticsPoller, MetricsCollector
from .prefetch import DEFAULT_LOOKAHEAD, Prefetcher, Resolver
from .revalidation import ErrorSink, RevalidationController
from .serialization import JsonCodec
from .sessions import LoadSession, SessionRegistry
from .store import CacheStore

logger = logging.getLogger("cache.coordinator")

Producer = Callable[[], Awaitable[Any]]
StateListener = Callable[[CacheState], None]


class CacheCoordinator:
    """
    Resolves values per key with the lowest latency the cache allows:
    - Cache hits are returned at once and refreshed in the background
    - Misses run the caller's producer and write the result
    - A newer load for a key supersedes the older one (last caller wins)
    - Subscribers observe per-key state, including silent refreshes

    Construct one per application and pass it to every consumer.
    """

    def __init__(
        self,
        store: CacheStore,
        options: Optional[CacheOptions] = None,
        codec: Optional[JsonCodec] = None,
        metrics: Optional[MetricsCollector] = None,
        error_sink: Optional[ErrorSink] = None,
        prefetch_concurrency: int = 5,
        prefetch_lookahead: int = DEFAULT_LOOKAHEAD,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Shared cache store
            options: TTL and feature switches
            codec: Value codec (JSON, compressed when options.compression)
            metrics: Metrics collector; a new one is created if omitted
            error_sink: Receives background revalidation failures
            prefetch_concurrency: Max keys warmed at once
            prefetch_lookahead: Keys warmed by prefetch_next()
            poll_interval_seconds: Interval for analytics_poller()
        """
        self._store = store
        self.options = options or CacheOptions()
        self._codec = codec or JsonCodec(compress=self.options.compression)
        self.metrics = metrics or MetricsCollector()
        self._sessions = SessionRegistry()
        self._states: Dict[str, CacheState] = {}
        self._listeners: Dict[str, List[StateListener]] = defaultdict(list)
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self.prefetch_lookahead = prefetch_lookahead
        self.poll_interval_seconds = poll_interval_seconds

        self.revalidator = RevalidationController(
            store,
            self._codec,
            on_change=self._apply_revalidated,
            error_sink=error_sink,
        )
        self.prefetcher = Prefetcher(
            store,
            self._codec,
            enabled=self.options.enable_predictive,
            concurrency=prefetch_concurrency,
            ttl_seconds=self.options.ttl_seconds,
        )

    @property
    def store(self) -> CacheStore:
        return self._store

    async def load(
        self,
        key: str,
        producer: Producer,
        force_refresh: bool = False,
        *,
        ttl_seconds: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        Get the value for key from cache or from producer.

        Args:
            key: Cache key
            producer: Zero-argument async function returning the value
            force_refresh: Skip the cache lookup and always produce
            ttl_seconds: Freshness window for a written entry
            token: Caller-owned token; cancelling it abandons this load

        Returns:
            The value, or None if this load was superseded or cancelled

        Raises:
            ProducerError: If producer failed for any other reason
        """
        ttl = self.options.ttl_seconds if ttl_seconds is None else ttl_seconds
        session = self._sessions.start(key, parent=token)
        try:
            return await self._load(session, producer, force_refresh, ttl)
        finally:
            self._sessions.finish(session)
            self._release_write_lock(key)

    async def _load(
        self,
        session: LoadSession,
        producer: Producer,
        force_refresh: bool,
        ttl: float,
    ) -> Any:
        key = session.key

        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
        else:
            entry = await self._lookup(key)
            if not self._sessions.is_current(session):
                logger.debug(f"Load superseded during lookup: {key}")
                return None
            if entry is not None:
                try:
                    value = self._codec.decode(entry.serialized_value)
                except ValueError as e:
                    logger.warning(f"Undecodable cache entry for {key}, refetching: {e}")
                else:
                    return self._serve_cached(session, entry, value, producer, ttl)
            logger.info(f"CACHE MISS: {key}")

        self.metrics.record_miss(key)
        self._update_state(key, is_loading=True, cache_hit=False)

        try:
            value = await self._sessions.run(session, producer)
        except (asyncio.CancelledError, CancellationError):
            if session.cancelled:
                logger.debug(f"Load cancelled: {key}")
                return None
            raise
        except Exception as e:
            if session.cancelled:
                logger.debug(f"Ignoring failure of superseded load: {key}")
                return None
            logger.warning(f"Fetch failed for {key}: {e}")
            self._update_state(key, is_loading=False, error=e)
            raise ProducerError(key, e) from e

        if not self._sessions.is_current(session):
            logger.debug(f"Discarding superseded result: {key}")
            return None

        load_time_ms = self._elapsed_ms(session)
        try:
            serialized = self._codec.encode(value)
        except (TypeError, ValueError) as e:
            self._update_state(key, is_loading=False, error=e)
            raise ProducerError(key, e) from e

        async with self._write_lock(key):
            # Only the current session may write; checked while holding the lock
            if not self._sessions.is_current(session):
                logger.debug(f"Discarding superseded result before write: {key}")
                return None
            try:
                await self._store.set(key, serialized, ttl)
            except StoreError as e:
                logger.warning(f"Could not cache {key}, serving uncached value: {e}")

        if not self._sessions.is_current(session):
            return None

        self.metrics.record_load_time(load_time_ms)
        self._set_state(key, CacheState(
            data=value,
            is_loading=False,
            error=None,
            is_stale=False,
            cache_hit=False,
            load_time_ms=load_time_ms,
            source=CacheSource.UPSTREAM,
        ))
        logger.debug(f"{CacheSource.UPSTREAM.value.upper()}: {key} [{load_time_ms:.1f}ms]")
        return value

    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        """Read an entry; store failures count as a miss."""
        try:
            return await self._store.get_entry(key)
        except StoreError as e:
            logger.warning(f"Cache store unavailable, treating as miss: {key} - {e}")
            return None

    def _serve_cached(
        self,
        session: LoadSession,
        entry: CacheEntry,
        value: Any,
        producer: Producer,
        ttl: float,
    ) -> Any:
        key = session.key
        now = self._store.now()
        source = entry.cache_source(now)
        is_stale = source is CacheSource.STALE
        load_time_ms = self._elapsed_ms(session)

        logger.debug(
            f"CACHE HIT ({source.value}): {key} "
            f"[age={entry.age_seconds(now):.1f}s]"
        )
        self.metrics.record_hit(key)
        self._set_state(key, CacheState(
            data=value,
            is_loading=False,
            error=None,
            is_stale=is_stale,
            cache_hit=True,
            load_time_ms=load_time_ms,
            source=source,
        ))

        if self.options.preload_next:
            self.revalidator.schedule(key, producer, entry.serialized_value, ttl)
        return value

    @staticmethod
    def _elapsed_ms(session: LoadSession) -> float:
        return (asyncio.get_running_loop().time() - session.started_at) * 1000

    def _write_lock(self, key: str) -> asyncio.Lock:
        """Serializes store writes for one key."""
        lock = self._write_locks.get(key)
        if lock is None:
            lock = self._write_locks[key] = asyncio.Lock()
        return lock

    def _release_write_lock(self, key: str) -> None:
        """Drop the write lock once no load for key is in flight."""
        lock = self._write_locks.get(key)
        if lock is not None and not lock.locked() and not self._sessions.has_session(key):
            del self._write_locks[key]

    def _apply_revalidated(self, key: str, value: Any) -> None:
        """Publish a changed background value without a loading transition."""
        self._set_state(key, self.state(key).evolve(
            data=value, is_stale=False, error=None, source=CacheSource.FRESH
        ))

    async def refresh(self, key: str, producer: Producer, **kwargs: Any) -> Any:
        """Bypass the cache and reload key."""
        return await self.load(key, producer, force_refresh=True, **kwargs)

    def cancel(self, key: str) -> bool:
        """Abandon the in-flight load for key, e.g. on consumer teardown."""
        return self._sessions.cancel(key)

    async def clear_cache(self) -> bool:
        """
        Invalidate every entry and reset metrics.

        In-flight loads and background refreshes are cancelled first so
        none of them can write an entry back after the clear.

        Returns:
            True if the store was cleared
        """
        cancelled = self._sessions.cancel_all()
        refreshes = await self.revalidator.cancel_all()
        if cancelled or refreshes:
            logger.debug(f"Clear cancelled {cancelled} loads and {refreshes} refreshes")

        try:
            await self._store.clear_all()
        except StoreError as e:
            logger.warning(f"Failed to clear cache: {e}")
            return False

        self.metrics.reset()
        for key in list(self._states):
            self._update_state(key, cache_hit=False, is_stale=True)
        return True

    def get_metrics(self) -> CacheMetrics:
        return self.metrics.snapshot()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = self.metrics.get_stats()
        stats["sessions"] = self._sessions.get_stats()
        stats["revalidating_count"] = self.revalidator.pending
        stats["revalidations"] = self.revalidator.revalidations
        stats["revalidation_failures"] = self.revalidator.failures
        return stats

    # Subscriptions

    def state(self, key: str) -> CacheState:
        return self._states.get(key, CacheState())

    def subscribe(self, key: str, listener: StateListener) -> Callable[[], None]:
        """
        Observe state changes for key.

        Returns:
            A function that removes the listener
        """
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def _update_state(self, key: str, **changes: Any) -> None:
        self._set_state(key, self.state(key).evolve(**changes))

    def _set_state(self, key: str, state: CacheState) -> None:
        self._states[key] = state
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(state)
            except Exception:
                logger.exception(f"State listener failed for {key}")

    # Prefetching

    async def prefetch(self, keys: Iterable[str], resolve: Resolver) -> PrefetchSummary:
        return await self.prefetcher.prefetch(keys, resolve)

    async def prefetch_resources(self, resources: Mapping[str, Producer]) -> PrefetchSummary:
        return await self.prefetcher.prefetch_resources(resources)

    async def prefetch_next(
        self,
        current_key: str,
        ordered_keys: Sequence[str],
        resolve: Resolver,
    ) -> PrefetchSummary:
        return await self.prefetcher.prefetch_next(
            current_key, ordered_keys, resolve, lookahead=self.prefetch_lookahead
        )

    def analytics_poller(self, interval_seconds: Optional[float] = None) -> AnalyticsPoller:
        """Poller over this coordinator's store; the caller starts and stops it."""
        return AnalyticsPoller(self._store, interval_seconds or self.poll_interval_seconds)

    # Lifecycle

    async def close(self) -> None:
        """Cancel in-flight loads and background refreshes."""
        cancelled = self._sessions.cancel_all()
        revalidations = await self.revalidator.cancel_all()
        logger.debug(f"Coordinator closed ({cancelled} loads, {revalidations} refreshes cancelled)")

    async def __aenter__(self) -> "CacheCoordinator":
        await self._store.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def create_coordinator(
    config: Optional[Settings] = None,
    backend: Optional[StorageBackend] = None,
    clock: Callable[[], datetime] = utcnow,
    error_sink: Optional[ErrorSink] = None,
) -> CacheCoordinator:
    """
    Build a coordinator from settings.

    Call once at application start and pass the result to consumers.
    Uses the SQL backend at config.database_url unless a backend is given.
    """
    config = config or default_settings
    options = CacheOptions.from_settings(config)
    store = CacheStore(
        backend or SqlBackend(config.database_url),
        default_ttl_seconds=options.ttl_seconds,
        clock=clock,
    )
    return CacheCoordinator(
        store,
        options=options,
        error_sink=error_sink,
        prefetch_concurrency=config.prefetch_concurrency,
        prefetch_lookahead=config.prefetch_lookahead,
        poll_interval_seconds=config.analytics_poll_interval_seconds,
    )
