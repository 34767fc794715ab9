"""
Cache layer for remote source snapshots.

This service handles:
- Time-based and event-based expiry of fetched source views
- Bounded LRU eviction
- Single-flight fetching per key, so concurrent misses run one fetch
- Stale reads for degraded serving when a refetch fails

Read, write and invalidate never await, so on the event loop each of them is
atomic with respect to other coroutines.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Iterable, Optional

from element_index.domain.models import CacheRecord, CacheStats, IndexEntry

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Iterable[IndexEntry]]]


def entries_checksum(entries: Iterable[IndexEntry]) -> str:
    """Checksum over the identity, version and fingerprint of a set of entries."""
    digest = hashlib.sha256()
    for entry in sorted(entries, key=lambda e: (e.id, e.locator)):
        digest.update(f"{entry.id}|{entry.version or ''}|{entry.content_fingerprint or ''}\n".encode("utf-8"))
    return digest.hexdigest()


class CacheLayer:
    """
    Keyed, TTL-aware, bounded LRU store of CacheRecords.

    Constructed explicitly and handed to the readers that use it.
    """

    def __init__(self, max_entries: int = 64):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._records: "OrderedDict[str, CacheRecord]" = OrderedDict()
        # Per-key fetch locks and how many coroutines hold or wait on each;
        # a lock is dropped when its count reaches zero.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        # Token of the fetch running for a key. Invalidation removes it so that
        # fetch does not repopulate the key.
        self._inflight: Dict[str, object] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    # ========================================================================
    # Synchronous operations
    # ========================================================================

    def get(self, key: str) -> Optional[CacheRecord]:
        """Return the record for ``key`` if present and within its TTL, else None."""
        record = self._records.get(key)
        if record is None or record.is_expired():
            self._misses += 1
            return None
        self._records.move_to_end(key)
        self._hits += 1
        return record

    def get_stale(self, key: str) -> Optional[CacheRecord]:
        """
        Return the record for ``key`` even if its TTL has passed.

        Invalidated records are gone, so this never returns one.
        """
        return self._records.get(key)

    def set(self, key: str, record: CacheRecord) -> None:
        self._records[key] = record
        self._records.move_to_end(key)
        while len(self._records) > self.max_entries:
            evicted, _ = self._records.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted cache record {evicted}")

    def invalidate(self, key: str) -> bool:
        """Drop ``key``. Returns True when a record was removed."""
        self._inflight.pop(key, None)
        removed = self._records.pop(key, None) is not None
        if removed:
            self._invalidations += 1
            logger.debug(f"Invalidated cache record {key}")
        return removed

    def invalidate_all(self, prefix: Optional[str] = None) -> int:
        """Drop every record, or only those whose key starts with ``prefix``."""
        def matches(key: str) -> bool:
            return prefix is None or key.startswith(prefix)

        for key in [k for k in self._inflight if matches(k)]:
            del self._inflight[key]

        keys = [k for k in self._records if matches(k)]
        for key in keys:
            del self._records[key]
        self._invalidations += len(keys)
        return len(keys)

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=len(self._records),
            max_entries=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            invalidations=self._invalidations,
            hit_rate=(self._hits / lookups) if lookups else 0.0,
        )

    def __bool__(self) -> bool:
        # An empty cache is still a cache.
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    # ========================================================================
    # Fetching
    # ========================================================================

    async def get_or_fetch(self, key: str, fetch: Fetcher, ttl_seconds: float) -> CacheRecord:
        """
        Return a fresh record for ``key``, running ``fetch`` on a miss.

        Concurrent misses on the same key share one fetch; misses on different
        keys proceed in parallel. Errors from ``fetch`` propagate and nothing
        is cached. A fetch overtaken by an invalidation of ``key`` still
        returns its result to the caller but is not stored.
        """
        record = self.get(key)
        if record is not None:
            return record

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # Another coroutine may have filled the key while we waited.
                record = self._records.get(key)
                if record is not None and not record.is_expired():
                    return record

                token = object()
                self._inflight[key] = token
                try:
                    entries = tuple(await fetch())
                finally:
                    current = self._inflight.get(key) is token
                    if current:
                        del self._inflight[key]

                record = CacheRecord(
                    key=key,
                    entries=entries,
                    ttl_seconds=ttl_seconds,
                    source_checksum=entries_checksum(entries),
                )
                if current:
                    self.set(key, record)
                else:
                    logger.debug(f"Discarding fetch result for {key}: invalidated while fetching")
                return record
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]
