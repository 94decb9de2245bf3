"""
Core cache data structures.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from config.settings import Settings


DEFAULT_TTL_SECONDS = 24 * 60 * 60


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class CacheSource(Enum):
    """Source of a served value."""
    FRESH = "fresh"       # Within TTL
    STALE = "stale"       # Past TTL, served while revalidating
    UPSTREAM = "upstream" # Produced by the caller's producer


@dataclass
class CacheEntry:
    """
    A cached value with the metadata needed for freshness tracking.

    The serialized value is opaque here; encoding belongs to the codec.
    """
    key: str
    serialized_value: str
    created_at: datetime
    ttl_seconds: float = DEFAULT_TTL_SECONDS

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the entry was written."""
        return ((now or utcnow()) - self.created_at).total_seconds()

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """Check if the entry is within its TTL."""
        return self.age_seconds(now) < self.ttl_seconds

    def cache_source(self, now: Optional[datetime] = None) -> CacheSource:
        if self.is_fresh(now):
            return CacheSource.FRESH
        return CacheSource.STALE

    def to_dict(self) -> dict:
        """Envelope persisted through the storage backend."""
        return {
            "key": self.key,
            "value": self.serialized_value,
            "created_at": self.created_at.isoformat(),
            "ttl": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            key=data["key"],
            serialized_value=data["value"],
            created_at=created_at,
            ttl_seconds=float(data.get("ttl", DEFAULT_TTL_SECONDS)),
        )


@dataclass(frozen=True)
class CacheOptions:
    """Per-coordinator behaviour switches."""
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    preload_next: bool = True        # Revalidate in the background after a hit
    enable_predictive: bool = True   # Allow prefetching
    compression: bool = False        # Advisory, honoured by the codec only

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheOptions":
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            preload_next=settings.preload_next,
            enable_predictive=settings.enable_predictive,
            compression=settings.compression,
        )


@dataclass(frozen=True)
class CacheState:
    """
    Observable state for one key, as seen by subscribers.

    Mirrors what a consumer renders: the current value, whether a load is
    pending, the last error and where the value came from (fresh or stale
    cache entry, or the upstream producer).
    """
    data: Any = None
    is_loading: bool = True
    error: Optional[Exception] = None
    is_stale: bool = False
    cache_hit: bool = False
    load_time_ms: float = 0.0
    source: Optional[CacheSource] = None

    def evolve(self, **changes: Any) -> "CacheState":
        return replace(self, **changes)


@dataclass(frozen=True)
class CacheMetrics:
    """Read-only snapshot of the coordinator's counters."""
    hits: int = 0
    misses: int = 0
    avg_load_time_ms: float = 0.0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage."""
        total = self.total_requests
        return (self.hits / total * 100) if total > 0 else 0.0


@dataclass(frozen=True)
class AnalyticsSnapshot:
    """Aggregate view reported by a storage backend."""
    hit_rate: float = 0.0
    avg_load_time: float = 0.0
    cache_size: int = 0


@dataclass
class PrefetchSummary:
    """Outcome of one prefetch run."""
    enabled: bool = True
    planned: int = 0
    loaded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)

    @property
    def progress(self) -> float:
        """Percentage of planned keys that settled successfully."""
        if self.planned == 0:
            return 100.0
        return (self.loaded + self.skipped) / self.planned * 100
