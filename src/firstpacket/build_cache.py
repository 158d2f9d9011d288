# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Content-addressed build cache with TTL invalidation.

Keys are sha256 digests of the canonical JSON of every input that affects
an output (content hashes + relevant config fields), so identical effective
inputs always map to the same entry.

Expiry is lazy: an entry older than the TTL reads as a miss.  The
orchestrator may additionally run :meth:`BuildCache.prune_expired` on a
timer to reclaim space.  A miss is a normal outcome (``get`` returns
``None``), never an exception.

Entries may be written from a background task while a build reads, so the
store is guarded by a readers/writer lock.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def cache_key(payload: Any) -> str:
    """sha256 over the canonical JSON serialization of *payload*."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Entry / stats
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BuildCacheEntry:
    input_hash: str
    output_artifact: Any
    size: int
    compliance_ok: bool
    created_at: float  # clock() seconds

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass
class CacheStats:
    """Counters for logging and the cache report."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    writes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# Readers/writer lock
# ---------------------------------------------------------------------------


class _ReadWriteLock:
    """Many concurrent readers or one writer.  Writers are not starved:
    new readers wait while a writer is queued."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ---------------------------------------------------------------------------
# BuildCache
# ---------------------------------------------------------------------------


class BuildCache:
    """In-memory map from input hash to a computed artifact.

    Eviction when over ``max_entries``: expired entries first, then the
    oldest by ``created_at`` (LRU by creation, not by access).
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        max_entries: int = 128,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, BuildCacheEntry] = {}
        self._lock = _ReadWriteLock()
        # Counters are bumped under the read lock by concurrent readers.
        self._stats_lock = threading.Lock()
        self._stats = CacheStats()

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> BuildCacheEntry | None:
        """Return the live entry for *key*, or ``None`` on a miss or expiry."""
        with self._lock.read():
            entry = self._entries.get(key)
            now = self._clock()
        with self._stats_lock:
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.age(now) > self._ttl:
                self._stats.misses += 1
                self._stats.expirations += 1
                logger.debug("Build cache expired: %s (age %.1fs)", key[:12], entry.age(now))
                return None
            self._stats.hits += 1
        logger.debug("Build cache hit: %s", key[:12])
        return entry

    def put(self, key: str, entry: BuildCacheEntry) -> None:
        """Store *entry* under *key*, replacing any previous entry."""
        with self._lock.write():
            self._entries[key] = entry
            self._stats.writes += 1
            if len(self._entries) > self._max_entries:
                self._prune_expired_locked()
            while len(self._entries) > self._max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].created_at)
                del self._entries[oldest]
                self._stats.evictions += 1
                logger.debug("Build cache eviction: %s", oldest[:12])

    def store(self, key: str, artifact: Any, *, size: int, compliance_ok: bool) -> BuildCacheEntry:
        """Convenience wrapper: build an entry stamped with the cache clock and ``put`` it."""
        entry = BuildCacheEntry(
            input_hash=key,
            output_artifact=artifact,
            size=size,
            compliance_ok=compliance_ok,
            created_at=self._clock(),
        )
        self.put(key, entry)
        return entry

    def prune_expired(self) -> int:
        """Drop every TTL-expired entry; returns how many were removed."""
        with self._lock.write():
            removed = self._prune_expired_locked()
        if removed:
            logger.info("Build cache swept %d expired entries", removed)
        return removed

    def _prune_expired_locked(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.age(now) > self._ttl]
        for k in expired:
            del self._entries[k]
        self._stats.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()

    def snapshot(self) -> list[dict[str, Any]]:
        """Entry metadata (no artifacts), oldest first."""
        with self._lock.read():
            entries = sorted(self._entries.values(), key=lambda e: e.created_at)
            now = self._clock()
        return [
            {
                "input_hash": e.input_hash,
                "size": e.size,
                "compliance_ok": e.compliance_ok,
                "created_at": e.created_at,
                "expired": e.age(now) > self._ttl,
            }
            for e in entries
        ]

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock.read():
            return key in self._entries
