"""
Storage backends for the cache store.

A backend is a plain async string mapping. The store above it owns the entry
envelope, TTL bookkeeping and error translation.
"""
import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine, func
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import settings
from .core import AnalyticsSnapshot, utcnow

logger = logging.getLogger("cache.backends")

Base = declarative_base()


class StorageBackend(Protocol):
    """
    Interface for persistent key-value stores.

    Implementations:
    - MemoryBackend: process-local dict
    - SqlBackend: SQLAlchemy table (SQLite by default)
    """

    async def initialize(self) -> None:
        """Prepare the backend. May be called more than once."""
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def clear_all(self) -> None:
        ...

    async def analytics(self) -> Optional[AnalyticsSnapshot]:
        """Aggregate snapshot, or None if nothing has been recorded yet."""
        ...


class AccessStats:
    """Read counters shared by the bundled backends."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self._total_ms = 0.0

    def record(self, hit: bool, elapsed_ms: float) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        self._total_ms += elapsed_ms

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self._total_ms = 0.0

    def snapshot(self, cache_size: int) -> Optional[AnalyticsSnapshot]:
        total = self.hits + self.misses
        if total == 0:
            return None
        return AnalyticsSnapshot(
            hit_rate=self.hits / total * 100,
            avg_load_time=self._total_ms / total,
            cache_size=cache_size,
        )


class MemoryBackend:
    """Dict-backed backend. Nothing survives the process."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._stats = AccessStats()
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def get(self, key: str) -> Optional[str]:
        start = time.perf_counter()
        value = self._data.get(key)
        self._stats.record(value is not None, (time.perf_counter() - start) * 1000)
        return value

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def clear_all(self) -> None:
        self._data.clear()
        self._stats.reset()

    async def analytics(self) -> Optional[AnalyticsSnapshot]:
        return self._stats.snapshot(len(self._data))

    def __len__(self) -> int:
        return len(self._data)


class CacheRow(Base):
    """One persisted cache entry envelope."""
    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<CacheRow(key='{self.key}', updated_at={self.updated_at})>"


class SqlBackend:
    """
    SQLAlchemy-backed backend.

    Blocking database calls are pushed to a worker thread so the event loop
    never waits on disk.
    """

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        self.database_url = database_url or settings.database_url
        engine_kwargs = {}
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # Needed for SQLite
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                # Single shared connection, otherwise each thread sees an empty DB
                engine_kwargs["poolclass"] = StaticPool

        self._engine = create_engine(
            self.database_url,
            connect_args=connect_args,
            echo=echo,
            **engine_kwargs,
        )
        self._session_factory = sessionmaker(autoflush=False, bind=self._engine)
        self._stats = AccessStats()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def initialize(self) -> None:
        """Create the table. Safe to call multiple times."""
        await asyncio.to_thread(Base.metadata.create_all, bind=self._engine)
        logger.info(f"Cache database ready at: {self.database_url}")

    def _get(self, key: str) -> Optional[str]:
        with self._session() as session:
            row = session.get(CacheRow, key)
            return row.value if row is not None else None

    async def get(self, key: str) -> Optional[str]:
        start = time.perf_counter()
        value = await asyncio.to_thread(self._get, key)
        self._stats.record(value is not None, (time.perf_counter() - start) * 1000)
        return value

    def _set(self, key: str, value: str) -> None:
        with self._session() as session:
            session.merge(CacheRow(key=key, value=value, updated_at=utcnow()))

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    def _clear(self) -> int:
        with self._session() as session:
            return session.query(CacheRow).delete()

    async def clear_all(self) -> None:
        count = await asyncio.to_thread(self._clear)
        self._stats.reset()
        logger.info(f"Cleared {count} persisted cache entries")

    def _count(self) -> int:
        with self._session() as session:
            return session.query(func.count(CacheRow.key)).scalar() or 0

    async def analytics(self) -> Optional[AnalyticsSnapshot]:
        size = await asyncio.to_thread(self._count)
        return self._stats.snapshot(size)

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()
