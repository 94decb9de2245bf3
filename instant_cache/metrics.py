"""
Runtime cache metrics.

MetricsCollector is the only writer of the hit/miss/latency counters; the
coordinator feeds it events. AnalyticsPoller periodically pulls the store's
own aggregate view for dashboards.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import suppress
from typing import Any, Dict, Optional

from .core import AnalyticsSnapshot, CacheMetrics
from .errors import StoreError
from .keys import namespace_of
from .store import CacheStore

logger = logging.getLogger("cache.metrics")

DEFAULT_POLL_INTERVAL_SECONDS = 10.0


class MetricsCollector:
    """
    Passive accumulator of cache events.

    The load-time average is sampled on produced loads but weighted by every
    request: avg' = (avg * (n - 1) + sample) / n, n = hits + misses.
    """

    def __init__(self):
        self._hits = 0
        self._misses = 0
        self._avg_load_time_ms = 0.0
        self._namespaces: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"hits": 0, "misses": 0}
        )

    def record_hit(self, key: str) -> None:
        self._hits += 1
        self._namespaces[namespace_of(key)]["hits"] += 1

    def record_miss(self, key: str) -> None:
        self._misses += 1
        self._namespaces[namespace_of(key)]["misses"] += 1

    def record_load_time(self, sample_ms: float) -> None:
        """Fold a load latency sample into the running average."""
        n = max(1, self._hits + self._misses)
        self._avg_load_time_ms = (self._avg_load_time_ms * (n - 1) + sample_ms) / n

    def snapshot(self) -> CacheMetrics:
        return CacheMetrics(
            hits=self._hits,
            misses=self._misses,
            avg_load_time_ms=self._avg_load_time_ms,
        )

    def reset(self) -> None:
        self._hits = 0
        self._misses = 0
        self._avg_load_time_ms = 0.0
        self._namespaces.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Counters plus a per-namespace breakdown."""
        snapshot = self.snapshot()
        namespaces = {}
        for name, counts in sorted(self._namespaces.items()):
            total = counts["hits"] + counts["misses"]
            namespaces[name] = {
                "hits": counts["hits"],
                "misses": counts["misses"],
                "hit_rate_percent": round(counts["hits"] / total * 100, 1) if total else 0.0,
            }
        return {
            "hits": snapshot.hits,
            "misses": snapshot.misses,
            "total_requests": snapshot.total_requests,
            "avg_load_time_ms": round(snapshot.avg_load_time_ms, 2),
            "hit_rate_percent": round(snapshot.hit_rate, 1),
            "namespaces": namespaces,
        }

    def log_report(self) -> Dict[str, Any]:
        """Log a human-readable performance report and return the stats."""
        stats = self.get_stats()
        logger.info(
            f"Cache report: {stats['total_requests']} requests, "
            f"hit rate {stats['hit_rate_percent']}%, "
            f"avg load {stats['avg_load_time_ms']}ms"
        )
        for name, counts in stats["namespaces"].items():
            logger.info(
                f"  {name}: hits={counts['hits']} misses={counts['misses']} "
                f"hit_rate={counts['hit_rate_percent']}%"
            )
        return stats


class AnalyticsPoller:
    """
    Polls CacheStore.analytics() on a fixed interval.

    Failures are logged and the previous snapshot is kept, so observers
    always read the last good view.
    """

    def __init__(self, store: CacheStore, interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS):
        self._store = store
        self.interval_seconds = interval_seconds
        self._latest = AnalyticsSnapshot()
        self._task: Optional[asyncio.Task] = None

    @property
    def latest(self) -> AnalyticsSnapshot:
        return self._latest

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> AnalyticsSnapshot:
        try:
            snapshot = await self._store.analytics()
        except StoreError as e:
            logger.warning(f"Failed to update cache analytics: {e}")
            return self._latest

        if snapshot is not None:
            self._latest = snapshot
        return self._latest

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Begin polling in the background. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
