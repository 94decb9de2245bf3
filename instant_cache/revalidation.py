"""
Background stale-while-revalidate refresh.

After a cache hit the served value is refreshed off the caller's path. The
refresh never reaches the caller: failures go to an error sink and the value
already served stays authoritative.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import RevalidationError, StoreError
from .serialization import JsonCodec
from .store import CacheStore

logger = logging.getLogger("cache.revalidation")

Producer = Callable[[], Awaitable[Any]]
ErrorSink = Callable[[RevalidationError], None]
ChangeListener = Callable[[str, Any], None]


def log_revalidation_error(error: RevalidationError) -> None:
    """Default error sink."""
    logger.warning(f"Background refresh failed: {error.key} - {error.cause}")


class RevalidationController:
    """
    Runs and supervises background refreshes.

    - At most one refresh per key is in flight; extra requests are dropped
    - Every refresh writes its result to the store, changed or not
    - Subscribers are told only when the serialized value changed
    """

    def __init__(
        self,
        store: CacheStore,
        codec: Optional[JsonCodec] = None,
        on_change: Optional[ChangeListener] = None,
        error_sink: Optional[ErrorSink] = None,
    ):
        self._store = store
        self._codec = codec or JsonCodec()
        self._on_change = on_change
        self._error_sink = error_sink or log_revalidation_error
        self._tasks: Dict[str, asyncio.Task] = {}

        self.revalidations = 0
        self.failures = 0

    async def revalidate(
        self,
        key: str,
        producer: Producer,
        served_value: Optional[str],
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """
        Refresh key once.

        Args:
            key: Cache key being refreshed
            producer: Zero-argument async function producing the value
            served_value: Serialized value the caller was given
            ttl_seconds: TTL for the rewritten entry

        Returns:
            True if the fresh value differs from the served one
        """
        logger.debug(f"Background revalidation started: {key}")
        try:
            value = await producer()
            serialized = self._codec.encode(value)
        except Exception as e:
            self.failures += 1
            self._report(RevalidationError(key, e))
            return False

        try:
            await self._store.set(key, serialized, ttl_seconds)
        except StoreError as e:
            logger.warning(f"Could not persist refreshed value for {key}: {e}")

        self.revalidations += 1
        changed = serialized != served_value
        if changed:
            logger.info(f"Revalidated {key}: value changed")
            if self._on_change is not None:
                self._on_change(key, value)
        else:
            logger.debug(f"Background revalidation complete, unchanged: {key}")
        return changed

    def schedule(
        self,
        key: str,
        producer: Producer,
        served_value: Optional[str],
        ttl_seconds: Optional[float] = None,
    ) -> Optional[asyncio.Task]:
        """
        Start a detached refresh for key.

        Returns:
            The task, or None if a refresh for key is already running
        """
        current = self._tasks.get(key)
        if current is not None and not current.done():
            logger.debug(f"Already revalidating: {key}")
            return None

        task = asyncio.create_task(
            self.revalidate(key, producer, served_value, ttl_seconds),
            name=f"cache-revalidate:{key}",
        )
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))
        return task

    def _finished(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # Escaped revalidate(), e.g. a failing change listener
            self.failures += 1
            self._report(RevalidationError(key, error))

    def _report(self, error: RevalidationError) -> None:
        try:
            self._error_sink(error)
        except Exception:
            logger.exception(f"Revalidation error sink failed for {error.key}")

    @property
    def pending(self) -> int:
        """Number of refreshes currently running."""
        return sum(1 for task in self._tasks.values() if not task.done())

    async def wait_idle(self) -> None:
        """Wait for every running refresh to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel every running refresh. Returns the number cancelled."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        return len(tasks)
