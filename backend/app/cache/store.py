"""
MindNote Backend — In-Memory Cache Store
=========================================

What:  Bounded key → value store with per-entry TTL and pluggable eviction.
Why:   Summaries, classifications, and embeddings are expensive to recompute;
       a small in-process cache in front of the providers removes repeat cost.
How:   A dict of CacheEntry records guarded by one lock per store. Expiry is
       lazy (checked when an entry is touched) and eviction is a linear scan
       that runs only when a new key arrives at a full store.
Who:   Owned by CacheRegistry; used by AIDispatcher (ai_results) and
       VectorBatchCoordinator (search).

Eviction (only when inserting a NEW key into a full store, exactly one entry):
    1. The first already-expired entry found while scanning in insertion order
    2. Otherwise the strategy victim:
       LRU  → oldest last_accessed_at
       FIFO → oldest created_at (overwriting a key re-inserts it)
       LFU  → smallest access_count

Tie-breaks:
    Timestamps can collide on coarse clocks, so every set/get also stamps a
    monotonic sequence number. LRU and FIFO break timestamp ties by that
    sequence (i.e. true operation order). LFU breaks access_count ties by
    least recent access, then operation order.

TTL semantics:
    set(key, value)            → store default TTL
    set(key, value, ttl=0)     → never expires
    set(key, value, ttl=2.5)   → expires 2.5 seconds after insertion
    A store whose default TTL is None or 0 keeps entries until evicted.

Thread Safety:
    All public methods take the store's RLock, so concurrent set/get/delete on
    the same key are linearizable. None of the operations block on I/O.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, Set, TypeVar

from app.schemas.cache import CacheStats

logger = logging.getLogger(__name__)

V = TypeVar("V")


class EvictionStrategy(str, Enum):
    LRU = "LRU"
    FIFO = "FIFO"
    LFU = "LFU"


@dataclass
class CacheEntry(Generic[V]):
    """Bookkeeping for one cached value. Never handed out to callers."""

    value: V
    created_at: float
    ttl: Optional[float]
    access_count: int = 0
    last_accessed_at: float = 0.0
    inserted_seq: int = 0
    accessed_seq: int = 0

    def is_expired(self, now: float) -> bool:
        if not self.ttl:
            return False
        return now - self.created_at > self.ttl


class CacheStore(Generic[V]):
    """
    Generic bounded cache with TTL expiry and LRU/FIFO/LFU eviction.

    Args:
        max_size:    Capacity; must be at least 1
        strategy:    Victim selection once no expired entry is available
        default_ttl: Seconds an entry lives when set() gets no ttl (None/0 = forever)
        name:        Label used in logs and stats
        clock:       Time source in seconds; injectable for tests

    Absence is a return value: get() returns None and has()/delete() return
    False for unknown or expired keys. A cached value of None is therefore
    indistinguishable from a miss; use has() when that matters.
    """

    def __init__(
        self,
        max_size: int = 1000,
        strategy: EvictionStrategy = EvictionStrategy.LRU,
        default_ttl: Optional[float] = 300.0,
        name: str = "cache",
        clock: Callable[[], float] = time.time,
    ):
        if max_size < 1:
            raise ValueError(f"Cache '{name}' max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self.strategy = EvictionStrategy(strategy)
        self.default_ttl = default_ttl or None
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._seq = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # ── Core operations ───────────────────────────────────────────────────

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """Insert or overwrite `key`; evicts one entry first if a new key meets a full store."""
        effective_ttl = self.default_ttl if ttl is None else (ttl or None)
        with self._lock:
            now = self._clock()
            if key in self._entries:
                # Re-insert so dict order (and FIFO age) restart from now
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._evict_one(now)

            seq = self._next_seq()
            self._entries[key] = CacheEntry(
                value=value,
                created_at=now,
                ttl=effective_ttl,
                last_accessed_at=now,
                inserted_seq=seq,
                accessed_seq=seq,
            )

    def get(self, key: str) -> Optional[V]:
        """Return the live value for `key` and record the access, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            entry.accessed_seq = self._next_seq()
            self._hits += 1
            return entry.value

    def has(self, key: str) -> bool:
        """Same expiry check as get(), without touching access statistics."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset hit/miss/eviction counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> Set[str]:
        """All stored keys, including expired entries nobody has touched yet."""
        with self._lock:
            return set(self._entries)

    def cleanup(self) -> int:
        """Eagerly remove every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache %s: cleanup removed %d expired entries", self.name, len(expired))
        return len(expired)

    def get_stats(self) -> CacheStats:
        """Point-in-time snapshot; does not expire, evict, or touch entries."""
        with self._lock:
            now = self._clock()
            size = len(self._entries)
            expired_count = 0
            total_access = 0
            oldest: Optional[float] = None
            newest: Optional[float] = None
            for entry in self._entries.values():
                if entry.is_expired(now):
                    expired_count += 1
                total_access += entry.access_count
                if oldest is None or entry.created_at < oldest:
                    oldest = entry.created_at
                if newest is None or entry.created_at > newest:
                    newest = entry.created_at

            lookups = self._hits + self._misses
            return CacheStats(
                name=self.name,
                strategy=self.strategy.value,
                total_size=size,
                expired_count=expired_count,
                valid_count=size - expired_count,
                total_access_count=total_access,
                average_access_count=(total_access / size) if size else 0.0,
                oldest_item=_to_datetime(oldest),
                newest_item=_to_datetime(newest),
                max_size=self.max_size,
                utilization_rate=(size / self.max_size) if self.max_size else 0.0,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                hit_rate=(self._hits / lookups) if lookups else 0.0,
            )

    # ── Dunder conveniences ───────────────────────────────────────────────

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __repr__(self) -> str:
        return (
            f"<CacheStore(name='{self.name}', strategy={self.strategy.value}, "
            f"size={len(self._entries)}/{self.max_size})>"
        )

    # ── Internals (caller holds the lock) ─────────────────────────────────

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _evict_one(self, now: float) -> None:
        victim = None
        for key, entry in self._entries.items():
            if entry.is_expired(now):
                victim = key
                break

        if victim is None:
            victim = self._select_victim()

        if victim is not None:
            del self._entries[victim]
            self._evictions += 1
            logger.debug("Cache %s: evicted '%s' (%s)", self.name, victim, self.strategy.value)

    def _select_victim(self) -> Optional[str]:
        if not self._entries:
            return None
        entries = self._entries.items()
        if self.strategy is EvictionStrategy.LRU:
            key_fn: Callable[[Any], Any] = lambda kv: (kv[1].last_accessed_at, kv[1].accessed_seq)
        elif self.strategy is EvictionStrategy.FIFO:
            key_fn = lambda kv: (kv[1].created_at, kv[1].inserted_seq)
        else:
            key_fn = lambda kv: (kv[1].access_count, kv[1].last_accessed_at, kv[1].accessed_seq)
        return min(entries, key=key_fn)[0]


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)
