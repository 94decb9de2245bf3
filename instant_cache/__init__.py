"""
Instant cache: keyed async caching with stale-while-revalidate, supersession,
cancellation, predictive prefetching and runtime metrics.
"""
from .core import (
    AnalyticsSnapshot,
    CacheEntry,
    CacheMetrics,
    CacheOptions,
    CacheSource,
    CacheState,
    PrefetchSummary,
)
from .errors import (
    CacheError,
    CancellationError,
    ProducerError,
    RevalidationError,
    StoreError,
)
from .cancellation import CancellationToken
from .backends import MemoryBackend, SqlBackend, StorageBackend
from .store import CacheStore
from .serialization import JsonCodec
from .keys import make_cache_key, namespace_of
from .sessions import LoadSession, SessionRegistry
from .metrics import AnalyticsPoller, MetricsCollector
from .revalidation import RevalidationController
from .prefetch import Prefetcher, next_keys
from .coordinator import CacheCoordinator, create_coordinator
from .fetchers import http_json_producer, http_text_producer, load_url, resolve_url_key

__all__ = [
    # Core types
    "AnalyticsSnapshot",
    "CacheEntry",
    "CacheMetrics",
    "CacheOptions",
    "CacheSource",
    "CacheState",
    "PrefetchSummary",
    # Errors
    "CacheError",
    "CancellationError",
    "ProducerError",
    "RevalidationError",
    "StoreError",
    # Storage
    "CancellationToken",
    "MemoryBackend",
    "SqlBackend",
    "StorageBackend",
    "CacheStore",
    "JsonCodec",
    # Keys
    "make_cache_key",
    "namespace_of",
    # Components
    "LoadSession",
    "SessionRegistry",
    "AnalyticsPoller",
    "MetricsCollector",
    "RevalidationController",
    "Prefetcher",
    "next_keys",
    # Coordinator
    "CacheCoordinator",
    "create_coordinator",
    # HTTP producers
    "http_json_producer",
    "http_text_producer",
    "load_url",
    "resolve_url_key",
]
