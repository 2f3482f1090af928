"""Cache of query results with TTL expiration and LRU eviction.

Results are keyed by the SHA-256 of the normalized query text (lower cased and trimmed),
so ``SELECT * FROM blocks`` and ``  select * from BLOCKS `` share the same entry.

Entries live at most ``ttl_seconds``: an expired entry is never returned,
even when the background sweeper didn't remove it yet.
When the cache is full, adding a new entry evicts the least recently
accessed one::

    >>> import pyarrow as pa
    >>> cache = ResultCache(max_size=2, ttl_seconds=60)
    >>> cache.set("SELECT 1 FROM blocks", pa.table({"x": [1]}), execution_time_ms=3.0)
    >>> cache.get("select 1 from blocks").hit_count
    1
    >>> cache.get("SELECT 2 FROM blocks") is None
    True

Rows are stored as :class:`pyarrow.Table`, which is immutable,
so the same table can be handed to every caller hitting the cache.
"""

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable

import pyarrow as pa
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    key: str
    query: str
    rows: pa.Table
    created_at: float
    execution_time_ms: float
    hit_count: int = 0
    last_accessed_at: float = 0.0
    max_rows: int | None = None

    def covers(self, max_rows: int | None) -> bool:
        """Whether the cached rows are the whole result for a ``max_rows`` cap.

        Rows cached under a cap that truncated them can't answer a larger one.
        """
        if self.max_rows is None or max_rows is None or max_rows <= self.max_rows:
            return True
        return self.rows.num_rows < self.max_rows


class ResultCache:
    """A thread safe TTL + LRU cache of query results."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        :param max_size: The maximum number of entries, past which the
                         least recently accessed entry is evicted.
        :param ttl_seconds: How long an entry remains valid after it was created.
        :param clock: Source of the current time in seconds, tests can replace it.
        """
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: threading.Thread | None = None
        self._sweeper_stop = threading.Event()

    @staticmethod
    def make_key(query: str) -> str:
        return hashlib.sha256(query.strip().lower().encode("utf-8")).hexdigest()

    def get(self, query: str, max_rows: int | None = None) -> CacheEntry | None:
        """Get the cached entry of a query, ``None`` on miss.

        A hit increments ``hit_count`` and refreshes ``last_accessed_at``.
        An entry truncated to fewer rows than ``max_rows`` is a miss.
        """
        key = self.make_key(query)
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.created_at > self.ttl_seconds:
                del self._entries[key]
                return None
            if not entry.covers(max_rows):
                return None
            entry.hit_count += 1
            entry.last_accessed_at = now
            return entry

    def set(
        self,
        query: str,
        rows: pa.Table,
        execution_time_ms: float,
        max_rows: int | None = None,
    ) -> None:
        """Store the result of a query, evicting the least recently accessed entry if full.

        :param max_rows: The row cap the result was computed with, if any.
        """
        key = self.make_key(query)
        now = self.clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_lru()
            self._entries[key] = CacheEntry(
                key=key,
                query=query,
                rows=rows,
                created_at=now,
                execution_time_ms=execution_time_ms,
                last_accessed_at=now,
                max_rows=max_rows,
            )

    def _evict_lru(self) -> None:
        lru = min(self._entries.values(), key=lambda e: e.last_accessed_at)
        del self._entries[lru.key]
        logger.debug("Evicted cache entry", key=lru.key, hit_count=lru.hit_count)

    def delete(self, query: str) -> bool:
        with self._lock:
            return self._entries.pop(self.make_key(query), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove all the expired entries, returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.created_at > self.ttl_seconds
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept expired cache entries", count=len(expired))
        return len(expired)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        """Size, total hits, average execution time and age of the oldest entry."""
        now = self.clock()
        with self._lock:
            entries = list(self._entries.values())
        return {
            "size": len(entries),
            "max_size": self.max_size,
            "total_hits": sum(e.hit_count for e in entries),
            "average_execution_time_ms": (
                sum(e.execution_time_ms for e in entries) / len(entries) if entries else 0.0
            ),
            "oldest_entry_age_seconds": (
                max(now - e.created_at for e in entries) if entries else None
            ),
        }

    def start_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Periodically sweep expired entries in a background thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval_seconds,),
            name="ledgerql-cache-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join()
            self._sweeper = None

    def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._sweeper_stop.wait(interval_seconds):
            self.sweep()
